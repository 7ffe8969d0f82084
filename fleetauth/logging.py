"""structlog setup for fleetauth.

Every entry carries the request id of the HTTP call that produced it, and
credential or contact fields are masked before rendering. Output is JSON by
default; set ``LOG_JSON=false`` or ``LOG_DEV_MODE=true`` for console output.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("fleetauth_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


# substrings of field names whose values must never be logged verbatim
_SENSITIVE_FIELDS = ("password", "secret", "token", "authorization", "email", "code")
# names that only describe a sensitive value
_DESCRIPTIVE_FIELDS = frozenset(
    {"email_hash", "token_prefix", "error_code", "token_type", "code_purpose"}
)


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _stamp_request(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = request_id
    return event_dict


def _redact_pii(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential and contact fields, keeping two characters at each end."""
    for key, value in list(event_dict.items()):
        name = key.lower()
        if name in _DESCRIPTIVE_FIELDS or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in name for marker in _SENSITIVE_FIELDS):
            event_dict[key] = _mask(value)
    return event_dict


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the fleetauth processor chain; ``console`` switches to the dev renderer."""
    renderer: list[Any]
    if console:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _stamp_request,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=_flag("LOG_DEV_MODE", "false") or not _flag("LOG_JSON", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_email(email: str) -> str:
    """Stable, non-reversible handle for an email address in logs."""
    normalized = (email or "").strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def log_security_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Emit a security-relevant event (lockout, role change, escalation attempt)."""
    (logger or get_logger("fleetauth.security")).warning(event, security_event=True, **fields)


_ERROR_SCRUBBERS = (
    # bearer credentials and compact JWTs
    (re.compile(r"(?i)bearer\s+\S+"), "Bearer [redacted]"),
    (re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]+"), "[jwt]"),
    # passwords embedded in DSNs
    (re.compile(r"(?i)(postgres(?:ql)?://[^:/\s]*:)[^@\s]+@"), r"\1***@"),
    (re.compile(r"(?i)(password|secret|token)\s*[:=]\s*\S+"), r"\1=[redacted]"),
    (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "[email]"),
)


def sanitize_error_message(error: str, *, limit: int = 500) -> str:
    """Scrub credentials, tokens and addresses from an exception message before logging."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern, replacement in _ERROR_SCRUBBERS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= limit else error[: limit - 3] + "..."

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from fleetauth.config import Settings, get_settings, reset_settings_cache
from fleetauth.logging import get_logger
from fleetauth.service.accounts import AccountService
from fleetauth.service.email import EmailService
from fleetauth.service.ledgers import (
    AuthStore,
    LoginAttemptLedger,
    RefreshTokenLedger,
    VerificationCodeLedger,
    translate_store_errors,
)
from fleetauth.service.passwords import PasswordHashing
from fleetauth.service.rbac import AuthorizationEngine
from fleetauth.service.session import SessionManager
from fleetauth.service.tokens import TokenCodec
from fleetauth.storage.memory import MemoryStore
from fleetauth.storage.models import CodePurpose, utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        notifier: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        else:
            self.store = self._build_store()

        s = self.settings
        self.engine = AuthorizationEngine()
        self.passwords = PasswordHashing()
        self.policy = s.password_policy()
        self.codec = TokenCodec.from_settings(s, clock=clock)
        self.notifier = notifier or EmailService.from_settings(s)
        self.login_attempts = LoginAttemptLedger(self.store, clock=clock)
        self.refresh_tokens = RefreshTokenLedger(
            self.store,
            self.codec,
            ttl=timedelta(days=s.refresh_token_ttl_days),
            fingerprint_salt=s.device_fingerprint_salt,
            clock=clock,
        )
        self.verification_codes = VerificationCodeLedger(
            self.store,
            CodePurpose.EMAIL_VERIFICATION,
            ttl=timedelta(hours=s.verification_code_ttl_hours),
            clock=clock,
        )
        self.reset_codes = VerificationCodeLedger(
            self.store,
            CodePurpose.PASSWORD_RESET,
            ttl=timedelta(hours=s.reset_code_ttl_hours),
            clock=clock,
        )
        self.sessions = SessionManager(
            self.store,
            s,
            codec=self.codec,
            engine=self.engine,
            attempts=self.login_attempts,
            refresh_tokens=self.refresh_tokens,
            passwords=self.passwords,
            clock=clock,
        )
        self.accounts = AccountService(
            self.store,
            s,
            engine=self.engine,
            passwords=self.passwords,
            policy=self.policy,
            verification_codes=self.verification_codes,
            reset_codes=self.reset_codes,
            refresh_tokens=self.refresh_tokens,
            notifier=self.notifier,
            clock=clock,
        )
        logger.info("runtime_init_completed", refresh_rotation=s.refresh_token_rotation)

    def _build_store(self) -> AuthStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: AuthStore = MemoryStore()
            else:
                from fleetauth.storage.postgres import PostgresStore

                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    @translate_store_errors
    def run_cleanup(self) -> Dict[str, int]:
        """Purge expired refresh tokens and codes, and login attempts past retention."""
        cutoff = self.clock() - timedelta(days=self.settings.login_attempt_retention_days)
        result = {
            "refresh_tokens": self.refresh_tokens.purge_expired(),
            "verification_codes": self.verification_codes.purge_expired(),
            "login_attempts": self.login_attempts.purge_older_than(cutoff),
        }
        logger.info("auth_cleanup_completed", **result)
        return result


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> Runtime:
    """Install a pre-built runtime, e.g. one with an injected clock or store."""
    global runtime
    with _runtime_lock:
        runtime = instance
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

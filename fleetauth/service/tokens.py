"""HS256 JWT issuing and verification.

Tokens are signed with the shared ``JWT_SECRET`` and carry ``iss``/``aud``
claims checked on verify. Only the ``HS256`` algorithm is accepted.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from fleetauth.logging import get_logger
from fleetauth.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenErrorKind(str, Enum):
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


class TokenError(Exception):
    """Token rejected by the codec; ``kind`` says why."""

    def __init__(self, kind: TokenErrorKind, message: str | None = None) -> None:
        super().__init__(message or kind.value)
        self.kind = kind


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be non-empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] = utcnow) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway=timedelta(seconds=settings.jwt_leeway_seconds),
            clock=clock,
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self, claims: dict[str, Any], ttl: timedelta, *, token_type: str = ACCESS
    ) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, expected_type: Optional[str] = None) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenError(TokenErrorKind.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError(TokenErrorKind.MALFORMED) from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(TokenErrorKind.MALFORMED) from None
        # reject alg confusion before checking the signature
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenError(TokenErrorKind.SIGNATURE_INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenError(TokenErrorKind.SIGNATURE_INVALID)

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenErrorKind.MALFORMED) from None
        if not isinstance(payload, dict):
            raise TokenError(TokenErrorKind.MALFORMED)

        if payload.get("iss") != self.issuer:
            raise TokenError(TokenErrorKind.SIGNATURE_INVALID, "issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenError(TokenErrorKind.SIGNATURE_INVALID, "audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenErrorKind.MALFORMED, "missing exp") from None
        if exp_ts <= self._clock().timestamp() - self.leeway.total_seconds():
            raise TokenError(TokenErrorKind.EXPIRED)

        if expected_type is not None and payload.get("token_type") != expected_type:
            raise TokenError(TokenErrorKind.WRONG_TYPE)
        return payload


__all__ = ["ACCESS", "REFRESH", "TokenCodec", "TokenError", "TokenErrorKind"]

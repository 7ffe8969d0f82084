from __future__ import annotations

import contextlib
import json
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from fleetauth.logging import get_logger
from fleetauth.service.rbac import Role
from fleetauth.storage.errors import ConstraintViolation, StoreUnavailableError
from fleetauth.storage.models import (
    AuditEvent,
    CodePurpose,
    Company,
    CompanyStatus,
    Identity,
    IdentityStatus,
    LoginAttempt,
    RefreshToken,
    VerificationCode,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS company (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_identity (
        id TEXT PRIMARY KEY,
        company_id TEXT NOT NULL REFERENCES company(id),
        email TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL,
        password_hash TEXT,
        password_algo TEXT,
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_identity_company ON app_identity (company_id)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_identity(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        device_fingerprint TEXT,
        user_agent TEXT,
        ip_addr TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        rotated BOOLEAN NOT NULL DEFAULT FALSE,
        parent_token_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_token_user ON refresh_token (user_id, revoked)",
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        failure_reason TEXT,
        user_id TEXT,
        attempted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_login_attempt_email ON login_attempt (email, attempted_at)",
    "CREATE INDEX IF NOT EXISTS idx_login_attempt_ip ON login_attempt (ip_addr, attempted_at)",
    """
    CREATE TABLE IF NOT EXISTS verification_code (
        id TEXT PRIMARY KEY,
        purpose TEXT NOT NULL,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (purpose, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        actor_id TEXT,
        target_id TEXT,
        company_id TEXT,
        detail JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class PostgresStore:
    """Postgres-backed identity directory and auth ledgers."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailableError("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping
    @staticmethod
    def _company_from_row(row: Dict[str, Any]) -> Company:
        return Company(
            id=str(row["id"]),
            name=row["name"],
            status=CompanyStatus(row["status"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            company_id=str(row["company_id"]),
            email=row["email"],
            full_name=row["full_name"],
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            role=Role(row["role"]),
            status=IdentityStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            device_fingerprint=row.get("device_fingerprint"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            revoked=bool(row.get("revoked")),
            rotated=bool(row.get("rotated")),
            parent_token_id=row.get("parent_token_id"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _login_attempt_from_row(row: Dict[str, Any]) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            email=row["email"],
            success=bool(row["success"]),
            attempted_at=row["attempted_at"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            failure_reason=row.get("failure_reason"),
            user_id=row.get("user_id"),
        )

    @staticmethod
    def _code_from_row(row: Dict[str, Any]) -> VerificationCode:
        return VerificationCode(
            id=str(row["id"]),
            purpose=CodePurpose(row["purpose"]),
            email=row["email"],
            code=row["code"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            created_at=row["created_at"],
        )

    # companies
    def save_company(self, company: Company) -> Company:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO company (id, name, status, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, status = EXCLUDED.status
                """,
                (company.id, company.name, company.status.value, company.created_at),
            )
        return company

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM company WHERE id = %s", (company_id,)
            ).fetchone()
        return self._company_from_row(row) if row else None

    def get_company_by_name(self, name: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM company WHERE name = %s ORDER BY created_at LIMIT 1", (name,)
            ).fetchone()
        return self._company_from_row(row) if row else None

    # identities
    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE email = %s", (_normalize_email(email),)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def save_identity(self, identity: Identity) -> Identity:
        identity.email = _normalize_email(identity.email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_identity (
                        id, company_id, email, full_name, password_hash, password_algo,
                        role, status, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        company_id = EXCLUDED.company_id,
                        email = EXCLUDED.email,
                        full_name = EXCLUDED.full_name,
                        password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        role = EXCLUDED.role,
                        status = EXCLUDED.status,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        identity.id,
                        identity.company_id,
                        identity.email,
                        identity.full_name,
                        identity.password_hash,
                        identity.password_algo,
                        identity.role.value,
                        identity.status.value,
                        identity.created_at,
                        identity.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("company missing", {"company_id": identity.company_id})
        return identity

    def count_identities_by_company(self, company_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM app_identity WHERE company_id = %s", (company_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def count_identities_by_role(self, role: Role) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM app_identity WHERE role = %s", (role.value,)
            ).fetchone()
        return int(row["n"]) if row else 0

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, user_id, token, device_fingerprint, user_agent, ip_addr,
                        expires_at, revoked, rotated, parent_token_id, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token,
                        token.device_fingerprint,
                        token.user_agent,
                        token.ip_addr,
                        token.expires_at,
                        token.revoked,
                        token.rotated,
                        token.parent_token_id,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token owner missing", {"user_id": token.user_id})
        return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def list_valid_refresh_tokens(self, user_id: str, now: datetime) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND revoked = FALSE AND rotated = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    def count_valid_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM refresh_token
                WHERE user_id = %s AND revoked = FALSE AND rotated = FALSE AND expires_at > %s
                """,
                (user_id, now),
            ).fetchone()
        return int(row["n"]) if row else 0

    def mark_refresh_token_rotated(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET rotated = TRUE
                WHERE token = %s AND rotated = FALSE AND revoked = FALSE
                """,
                (token,),
            )
            return cur.rowcount == 1

    def revoke_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return cur.rowcount

    def revoke_refresh_tokens_for_device(self, user_id: str, device_fingerprint: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE user_id = %s AND device_fingerprint = %s AND revoked = FALSE
                """,
                (user_id, device_fingerprint),
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # login attempts
    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        attempt.email = _normalize_email(attempt.email)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (
                    id, email, success, ip_addr, user_agent, failure_reason, user_id, attempted_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.email,
                    attempt.success,
                    attempt.ip_addr,
                    attempt.user_agent,
                    attempt.failure_reason,
                    attempt.user_id,
                    attempt.attempted_at,
                ),
            )
        return attempt

    def list_failed_login_times(self, email: str, since: datetime) -> List[datetime]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT attempted_at FROM login_attempt
                WHERE email = %s AND success = FALSE AND attempted_at >= %s
                ORDER BY attempted_at
                """,
                (_normalize_email(email), since),
            ).fetchall()
        return [row["attempted_at"] for row in rows]

    def count_failed_login_attempts(self, email: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM login_attempt
                WHERE email = %s AND success = FALSE AND attempted_at >= %s
                """,
                (_normalize_email(email), since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def count_login_attempts_from_ip(self, ip_addr: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM login_attempt WHERE ip_addr = %s AND attempted_at >= %s",
                (ip_addr, since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def last_successful_login(self, email: str) -> Optional[LoginAttempt]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM login_attempt
                WHERE email = %s AND success = TRUE
                ORDER BY attempted_at DESC LIMIT 1
                """,
                (_normalize_email(email),),
            ).fetchone()
        return self._login_attempt_from_row(row) if row else None

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM login_attempt WHERE attempted_at < %s", (cutoff,))
            return cur.rowcount

    # verification codes
    def replace_verification_code(self, code: VerificationCode) -> VerificationCode:
        code.email = _normalize_email(code.email)
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM verification_code WHERE purpose = %s AND email = %s",
                (code.purpose.value, code.email),
            )
            conn.execute(
                """
                INSERT INTO verification_code (id, purpose, email, code, expires_at, used, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (purpose, email) DO UPDATE SET
                    id = EXCLUDED.id,
                    code = EXCLUDED.code,
                    expires_at = EXCLUDED.expires_at,
                    used = EXCLUDED.used,
                    created_at = EXCLUDED.created_at
                """,
                (
                    code.id,
                    code.purpose.value,
                    code.email,
                    code.code,
                    code.expires_at,
                    code.used,
                    code.created_at,
                ),
            )
        return code

    def get_verification_code(self, purpose: CodePurpose, email: str) -> Optional[VerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_code WHERE purpose = %s AND email = %s",
                (purpose.value, _normalize_email(email)),
            ).fetchone()
        return self._code_from_row(row) if row else None

    def claim_verification_code(self, code_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE verification_code SET used = TRUE WHERE id = %s AND used = FALSE",
                (code_id,),
            )
            return cur.rowcount == 1

    def release_verification_code(self, code_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE verification_code SET used = FALSE WHERE id = %s", (code_id,))

    def delete_verification_code(self, purpose: CodePurpose, email: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM verification_code WHERE purpose = %s AND email = %s",
                (purpose.value, _normalize_email(email)),
            )

    def delete_expired_verification_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM verification_code WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # audit
    def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, action, actor_id, target_id, company_id, detail, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.actor_id,
                    event.target_id,
                    event.company_id,
                    json.dumps(event.detail) if event.detail else None,
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(
        self, company_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        query = "SELECT * FROM audit_event"
        params: list[Any] = []
        if company_id:
            query += " WHERE company_id = %s"
            params.append(company_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                action=row["action"],
                actor_id=row.get("actor_id"),
                target_id=row.get("target_id"),
                company_id=row.get("company_id"),
                detail=row.get("detail") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]

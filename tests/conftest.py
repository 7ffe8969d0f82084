import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("CLEANUP_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fleetauth.config import Settings  # noqa: E402
from fleetauth.service.email import EmailService  # noqa: E402
from fleetauth.service.rbac import Role  # noqa: E402
from fleetauth.service.runtime import Runtime, reset_runtime_for_tests, set_runtime  # noqa: E402
from fleetauth.storage.memory import MemoryStore  # noqa: E402
from fleetauth.storage.models import (  # noqa: E402
    CodePurpose,
    Company,
    CompanyStatus,
    Identity,
    IdentityStatus,
    new_id,
)

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
GOOD_PASSWORD = "CorrectPass1!"


class FakeClock:
    """Controllable clock; call it to read the time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(EmailService):
    """EmailService that records messages instead of sending them."""

    def __init__(self, *, fail: bool = False) -> None:
        super().__init__()
        self.sent: list[dict] = []
        self.fail = fail

    def _send_email(self, to_email, subject, html_body, text_body=None):
        self.sent.append({"to": to_email, "subject": subject, "text": text_body})
        return not self.fail

    def subjects_for(self, email: str) -> list[str]:
        return [m["subject"] for m in self.sent if m["to"] == email]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        cleanup_interval_seconds=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, notifier, clock):
    """Runtime wired to the fake clock; also installed as the app singleton."""
    rt = Runtime(settings, store=memory_store, notifier=notifier, clock=clock)
    set_runtime(rt)
    return rt


@pytest.fixture
def company(memory_store, clock):
    return memory_store.save_company(
        Company(id=new_id(), name="Acme Logistics", status=CompanyStatus.ACTIVE, created_at=clock())
    )


@pytest.fixture
def make_identity(runtime, memory_store, company):
    """Factory for ACTIVE identities with a known password."""

    def _make(
        email: str,
        role: Role = Role.DRIVER,
        *,
        company_id: str | None = None,
        status: IdentityStatus = IdentityStatus.ACTIVE,
        password: str = GOOD_PASSWORD,
    ) -> Identity:
        digest, algo = runtime.passwords.hash(password)
        return memory_store.save_identity(
            Identity(
                id=new_id(),
                company_id=company_id or company.id,
                email=email,
                full_name=email.split("@")[0].title(),
                password_hash=digest,
                password_algo=algo,
                role=role,
                status=status,
            )
        )

    return _make


@pytest.fixture
def owner(make_identity):
    return make_identity("owner@acme.test", Role.OWNER)


def current_code(store: MemoryStore, purpose: CodePurpose, email: str) -> str:
    row = store.get_verification_code(purpose, email)
    assert row is not None
    return row.code

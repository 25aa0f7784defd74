import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="onboarding_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap hashing keeps the suite fast; production defaults are tested explicitly
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from onboarding.service.accounts import AccountService  # noqa: E402
from onboarding.service.credentials import CredentialVerifier  # noqa: E402
from onboarding.service.runtime import reset_runtime_for_tests  # noqa: E402
from onboarding.service.tokens import TokenIssuer  # noqa: E402
from onboarding.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Mutable clock; tests move time forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailGateway:
    """Email gateway double that records every message it is asked to send."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, tuple]] = []
        self.fail_kinds: set[str] = set()
        self.raise_kinds: set[str] = set()

    def _record(self, kind: str, email: str, *args) -> bool:
        if kind in self.raise_kinds:
            raise ConnectionError(f"{kind} transport down")
        if kind in self.fail_kinds:
            return False
        self.sent.append((kind, email, args))
        return True

    def send_verification_email(self, email: str, name: str, code: str) -> bool:
        return self._record("verification", email, name, code)

    def send_password_reset_email(self, email: str, name: str, raw_token: str) -> bool:
        return self._record("password_reset", email, name, raw_token)

    def send_welcome_email(self, email: str, name: str) -> bool:
        return self._record("welcome", email, name)

    def of_kind(self, kind: str) -> list[tuple[str, str, tuple]]:
        return [entry for entry in self.sent if entry[0] == kind]

    def last_code(self) -> str:
        return self.of_kind("verification")[-1][2][1]

    def last_reset_token(self) -> str:
        return self.of_kind("password_reset")[-1][2][1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_gateway():
    return RecordingEmailGateway()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def credentials():
    return CredentialVerifier(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def token_issuer():
    return TokenIssuer(TEST_SECRET, issuer="onboarding", audience="onboarding-clients")


@pytest.fixture
def service(store, email_gateway, credentials, token_issuer, clock):
    return AccountService(
        store,
        email_gateway,
        tokens=token_issuer,
        credentials=credentials,
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

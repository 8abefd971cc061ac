import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="vaultauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Blank REDIS_URL selects the in-process session registry
os.environ["REDIS_URL"] = ""
# TestClient talks plain http, so session cookies cannot be Secure
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from vaultauth.config import get_settings  # noqa: E402
from vaultauth.service.auth import AuthService  # noqa: E402
from vaultauth.service.notifications import NotificationService  # noqa: E402
from vaultauth.service.passwords import PasswordService  # noqa: E402
from vaultauth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from vaultauth.service.tokens import TokenCodec  # noqa: E402
from vaultauth.storage.memory import MemoryStore  # noqa: E402
from vaultauth.storage.session_registry import MemorySessionRegistry  # noqa: E402


class RecordingNotifier(NotificationService):
    """Captures outgoing tokens and codes instead of delivering them."""

    def __init__(self):
        super().__init__()
        self.verifications = []
        self.resets = []
        self.mfa_codes = []
        self.mfa_enabled = []

    def send_email_verification(self, to_email, token):
        self.verifications.append((to_email, token))
        return True

    def send_password_reset(self, to_email, token):
        self.resets.append((to_email, token))
        return True

    def send_mfa_code(self, destination, code, *, method):
        self.mfa_codes.append((destination, code, method))
        return True

    def send_mfa_enabled(self, to_email):
        self.mfa_enabled.append(to_email)
        return True

    def last_verification_token(self, email):
        return next(token for to, token in reversed(self.verifications) if to == email)

    def last_reset_token(self, email):
        return next(token for to, token in reversed(self.resets) if to == email)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def outbox():
    """Swap the runtime's notifier for one that records what would be sent."""
    notifier = RecordingNotifier()
    runtime = get_runtime()
    runtime.notifier = notifier
    runtime.auth.notifier = notifier
    return notifier


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


class FakeClock:
    """Callable epoch clock that tests advance by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth(clock, notifier):
    """AuthService wired by hand around the fake clock and an in-memory registry."""
    settings = get_settings()
    codec = TokenCodec(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        remember_me_refresh_ttl_seconds=settings.remember_me_refresh_ttl_seconds,
        leeway_seconds=settings.clock_skew_leeway_seconds,
        clock=clock,
    )
    return AuthService(
        MemoryStore(mfa_encryption_key="auth-service-test-key"),
        MemorySessionRegistry(clock=clock),
        codec,
        PasswordService(time_cost=1, memory_cost=8192, parallelism=1),
        notifier,
        settings,
    )

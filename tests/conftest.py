import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
# Empty REDIS_URL keeps the runtime on the in-process MemoryCache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hrms.config import Settings  # noqa: E402
from hrms.service.activity import LoggingActivityRecorder  # noqa: E402
from hrms.service.auth import AuthService  # noqa: E402
from hrms.service.notifications import NotificationGateway  # noqa: E402
from hrms.service.runtime import reset_runtime_for_tests  # noqa: E402
from hrms.storage.memory import MemoryStore  # noqa: E402
from hrms.storage.memory_cache import MemoryCache  # noqa: E402
from hrms.storage.models import OtpChannel  # noqa: E402


class RecordingSender:
    """OTP sender that keeps every delivered code instead of sending it."""

    def __init__(self, channel: OtpChannel, *, succeed: bool = True):
        self.channel = channel
        self.succeed = succeed
        self.sent: list[tuple[str, str]] = []

    async def send_otp(self, recipient: str, code: str) -> bool:
        self.sent.append((recipient, code))
        return self.succeed

    def last_code(self, recipient: str | None = None) -> str:
        for to, code in reversed(self.sent):
            if recipient is None or to == recipient:
                return code
        raise AssertionError(f"no code sent to {recipient}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="Access-Secret_for-Automation-Only-123456789!",
        jwt_refresh_secret="Refresh-Secret_for-Automation-Only-987654321!",
        password_hash_cost=1,
        password_hash_memory_kib=1024,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def email_sender():
    return RecordingSender(OtpChannel.EMAIL)


@pytest.fixture
def sms_sender():
    return RecordingSender(OtpChannel.SMS)


@pytest.fixture
def auth_service(store, cache, settings, email_sender, sms_sender):
    gateway = NotificationGateway({OtpChannel.EMAIL: email_sender, OtpChannel.SMS: sms_sender})
    return AuthService(
        store,
        cache,
        settings,
        notifications=gateway,
        activity=LoggingActivityRecorder(store),
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

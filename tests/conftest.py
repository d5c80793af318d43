import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("CLEANUP_ENABLED", "false")
# Runtime runs without Redis so request counters never leak between tests;
# the Lua scripts are exercised directly against AUTHCORE_TEST_REDIS_URL
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
TESTS_DIR = Path(__file__).resolve().parent
for path in (ROOT, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from authcore.config import Settings  # noqa: E402
from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.notifier import EmailNotifier  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402
from cache_double import InMemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings.from_env()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache():
    return InMemoryCache()


class RecordingNotifier(EmailNotifier):
    """Keeps the last code/token per user instead of sending mail."""

    def __init__(self):
        super().__init__()
        self.codes = {}
        self.verification_tokens = {}

    async def send_otp(self, user, code):
        self.codes[user.id] = code
        return True

    async def send_verification(self, user, token):
        self.verification_tokens[user.id] = token
        return True


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, cache, settings, notifier):
    return AuthService(memory_store, cache, settings, notifier=notifier)


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

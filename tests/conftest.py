import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

# Configure before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests; MFA sessions and rate limit counters run in-process
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from merchantauth.service.notifications import NotificationError  # noqa: E402
from merchantauth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


class RecordingChannel:
    """Notification channel stand-in that remembers every code it was asked to send."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.sent: List[Tuple[str, str, Optional[str]]] = []
        self.fail = False

    async def send_code(self, destination: str, code: str, display_name: Optional[str] = None) -> None:
        if self.fail:
            raise NotificationError(self.name, f"{self.name} provider down")
        self.sent.append((destination, code, display_name))

    def last_code(self, destination: Optional[str] = None) -> str:
        for dest, code, _ in reversed(self.sent):
            if destination is None or dest == destination:
                return code
        raise AssertionError(f"no {self.name} code sent to {destination}")


class Channels:
    def __init__(self, email: RecordingChannel, sms: RecordingChannel) -> None:
        self.email = email
        self.sms = sms


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def recorders() -> Channels:
    return Channels(RecordingChannel("email"), RecordingChannel("sms"))


@pytest.fixture
def channels(recorders) -> Channels:
    """Swap the runtime's delivery channels for recorders."""
    runtime = get_runtime()
    runtime.auth.email_channel = recorders.email
    runtime.auth.sms_channel = recorders.sms
    return recorders


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

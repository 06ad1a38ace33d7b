import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.service.clock import ManualClock  # noqa: E402
from authkernel.service.errors import DispatchFailedError  # noqa: E402
from authkernel.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkernel.service.sessions import SessionManager  # noqa: E402
from authkernel.service.tokens import TokenCodec  # noqa: E402
from authkernel.service.trust import AccountTrustGate  # noqa: E402
from authkernel.service.verification import VerificationManager  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402
from authkernel.storage.models import User  # noqa: E402

SIGNING_KEY = "unit-test-signing-key-0123456789abcdef"
ISSUER = "authkernel"
AUDIENCE = "authkernel-clients"


class RecordingDispatcher:
    """Collects outgoing messages instead of sending them."""

    def __init__(self):
        self.codes = []
        self.resets = []
        self.fail = False

    def dispatch_verification_code(self, recipient, code, expires_in_minutes):
        if self.fail:
            raise DispatchFailedError()
        self.codes.append((recipient, code, expires_in_minutes))

    def dispatch_password_reset(self, recipient, reset_url, expires_in_minutes):
        self.resets.append((recipient, reset_url, expires_in_minutes))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec(clock):
    return TokenCodec(
        SIGNING_KEY,
        issuer=ISSUER,
        audience=AUDIENCE,
        access_ttl_minutes=15,
        clock=clock,
    )


@pytest.fixture
def trust(memory_store):
    return AccountTrustGate(memory_store)


@pytest.fixture
def session_manager(memory_store, codec, trust, clock):
    return SessionManager(
        memory_store,
        codec,
        trust,
        session_ttl_minutes=60,
        clock=clock,
    )


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def verification_manager(memory_store, trust, dispatcher, clock):
    return VerificationManager(
        memory_store,
        trust,
        dispatcher,
        code_length=6,
        ttl_minutes=10,
        clock=clock,
    )


@pytest.fixture
def user(memory_store, clock):
    return memory_store.create_user(User.new("user@example.com", now=clock.now()))


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

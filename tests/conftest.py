import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="marketauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from marketauth.config import Settings, reset_settings_cache  # noqa: E402
from marketauth.service.runtime import create_runtime  # noqa: E402
from marketauth.storage.memory import MemoryStore  # noqa: E402
from marketauth.storage.models import OtpPurpose  # noqa: E402


class RecordingNotifier:
    """Captures delivered codes instead of sending email."""

    def __init__(self):
        self.sent: list[dict] = []
        self.result = True
        self.error: Exception | None = None

    def _record(self, kind: str, email: str, code: str, display_name: str) -> bool:
        if self.error is not None:
            raise self.error
        self.sent.append(
            {"kind": kind, "email": email, "code": code, "display_name": display_name}
        )
        return self.result

    def send_otp_email(self, email: str, code: str, display_name: str) -> bool:
        return self._record(OtpPurpose.EMAIL_VERIFICATION.value, email, code, display_name)

    def send_password_reset_email(self, email: str, code: str, display_name: str) -> bool:
        return self._record(OtpPurpose.PASSWORD_RESET.value, email, code, display_name)

    @property
    def last_code(self) -> str:
        return self.sent[-1]["code"]


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Test settings with cheap argon2 parameters."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        password_time_cost=1,
        password_memory_cost=8,
        password_parallelism=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, notifier):
    return create_runtime(settings, store=memory_store, notifier=notifier)


@pytest.fixture
def auth_service(runtime):
    return runtime.auth


@pytest.fixture
def verified_user(runtime, notifier):
    """A registered identity whose email is already confirmed."""
    email = "buyer@example.com"
    password = "CorrectHorse1!"
    session_id = asyncio.run(runtime.auth.register(email, password, "Ada", "Lovelace"))
    asyncio.run(runtime.auth.verify_email(session_id, notifier.last_code))
    user = runtime.store.get_user_by_email(email)
    return {"user": user, "email": email, "password": password}


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

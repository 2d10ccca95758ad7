import asyncio
import inspect
import os
import re
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.config import Settings  # noqa: E402
from authkernel.service.auth import AuthService  # noqa: E402
from authkernel.service.hashing import SecretHasher  # noqa: E402
from authkernel.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402

_CODE_PATTERN = re.compile(r"code is: (\d+)")


class RecordingMailer:
    """Mailer double that keeps every message it is asked to send."""

    def __init__(self, *, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    def send(self, to_email, subject, html_body, text_body=None):
        self.sent.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body}
        )
        return self.deliver

    def last_code(self, to_email):
        for message in reversed(self.sent):
            if message["to"] == to_email:
                match = _CODE_PATTERN.search(message["text"] or "")
                if match:
                    return match.group(1)
        raise AssertionError(f"no code was mailed to {to_email}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 30,
    )


@pytest.fixture
def hasher():
    return SecretHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def auth_service(memory_store, settings, hasher, mailer):
    return AuthService(memory_store, settings, mailer=mailer, hasher=hasher)


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

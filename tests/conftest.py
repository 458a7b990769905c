import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SWEEP_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.auth import AuthService  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402
from tenantauth.storage.models import Client  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store():
    """In-process store without a snapshot file."""
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(memory_store, settings)


@pytest.fixture
def client_app(memory_store):
    """A registered client application with id ``c1``."""
    return memory_store.create_client(Client(id="c1", name="Client One", secret_hash="unused"))


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

import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Set environment before any sessionguard import reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOCAL_TIMEZONE", "UTC")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import Settings, reset_settings_cache  # noqa: E402
from sessionguard.service.anomaly import AnomalyDetector  # noqa: E402
from sessionguard.service.audit import AuditLog  # noqa: E402
from sessionguard.storage.errors import StoreError  # noqa: E402
from sessionguard.storage.memory import MemoryKVStore  # noqa: E402


class FailingStore:
    """KV store whose every operation raises, simulating a Redis outage."""

    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise StoreError(f"store unavailable during {name}")

        return _fail


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        local_timezone="UTC",
    )


@pytest.fixture
def store():
    return MemoryKVStore()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def audit(store, settings):
    return AuditLog(store, settings)


@pytest.fixture
def detector(store, audit, settings):
    return AnomalyDetector(store, audit, settings)


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

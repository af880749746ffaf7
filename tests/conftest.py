import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="civicguard_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SQLITE_PATH", os.path.join(_test_tmp_dir, "civicguard.db"))
os.environ.setdefault("RATE_LIMIT_BACKENDS", "memory")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import fakeredis  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from civicguard.config import Settings, reset_settings_cache  # noqa: E402
from civicguard.service.hashing import SecretHasher  # noqa: E402
from civicguard.storage.memory import MemoryStore  # noqa: E402
from civicguard.storage.sqlite import SqliteStore  # noqa: E402


class FakeClock:
    """Deterministic clock handed to services in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    """In-process Redis that executes registered Lua scripts."""
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def hasher():
    return SecretHasher("v1")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        store_backend="memory",
        sqlite_path=str(tmp_path / "civicguard.db"),
        rate_limit_backends=["memory"],
        sweeper_enabled=False,
        test_mode=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore(lock_timeout=1.0)


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteStore(str(tmp_path / "credentials.db"), busy_timeout=5.0)


@pytest.fixture(params=["memory", "sqlite"])
def credential_store(request, tmp_path):
    """Each credential store implementation, for behavior shared by both."""
    if request.param == "memory":
        return MemoryStore(lock_timeout=1.0)
    return SqliteStore(str(tmp_path / "credentials.db"), busy_timeout=5.0)


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

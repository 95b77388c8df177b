import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional, Tuple

# Environment must be in place before anything initializes settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authplane_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests; cache behaviour is exercised through FakeCache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authplane.config import Settings  # noqa: E402
from authplane.service.auth import AuthService  # noqa: E402
from authplane.service.runtime import reset_runtime_for_tests  # noqa: E402
from authplane.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "correct-horse-9"
DESKTOP_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


class FakeCache:
    """In-process stand-in for RedisCache with TTLs and failure switches."""

    def __init__(self) -> None:
        self.data: Dict[str, Tuple[str, float]] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.set_calls = 0
        self.set_many_calls = 0
        self.get_many_calls = 0

    def _live(self, key: str) -> Optional[str]:
        item = self.data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires <= time.time():
            self.data.pop(key, None)
            return None
        return value

    def ttl(self, key: str) -> Optional[float]:
        item = self.data.get(key)
        return item[1] - time.time() if item else None

    def verify_connection(self) -> None:
        if self.fail_reads:
            raise ConnectionError("cache unavailable")

    async def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise ConnectionError("cache unavailable")
        return self._live(key)

    async def get_many(self, keys):
        if self.fail_reads:
            raise ConnectionError("cache unavailable")
        self.get_many_calls += 1
        return [self._live(k) for k in keys]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if self.fail_writes:
            raise ConnectionError("cache unavailable")
        self.set_calls += 1
        self.data[key] = (value, time.time() + max(1, int(ttl_seconds)))

    async def set_many(self, items) -> int:
        if self.fail_writes:
            raise ConnectionError("cache unavailable")
        self.set_many_calls += 1
        count = 0
        for key, value, ttl in items:
            self.data[key] = (value, time.time() + max(1, int(ttl)))
            count += 1
        return count

    async def delete(self, key: str) -> None:
        if self.fail_writes:
            raise ConnectionError("cache unavailable")
        self.data.pop(key, None)

    async def close(self) -> None:
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        jwt_secret="unit-test-secret-key-with-at-least-32-chars",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def store(tmp_path) -> MemoryStore:
    return MemoryStore(fs_root=str(tmp_path / "store"), persist=False)


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def auth(store, cache, settings) -> AuthService:
    return AuthService(store, cache, settings)


@pytest.fixture
def company(store):
    return store.create_company("Acme", "acme")


def make_user(auth, company, email, *, system_role="USER", password=TEST_PASSWORD, status="ACTIVE"):
    return auth.store.create_user(
        email,
        auth.hash_password(password),
        company_id=company.id if company else None,
        system_role=system_role,
        status=status,
    )


@pytest.fixture
def user(auth, company):
    return make_user(auth, company, "alice@example.com")


def ua(n: int) -> str:
    """Distinct user agent per simulated device."""
    return f"{DESKTOP_CHROME} device/{n}"


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

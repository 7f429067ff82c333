import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenward.clock import FixedClock  # noqa: E402
from tokenward.config import get_settings, reset_settings_cache  # noqa: E402
from tokenward.service.runtime import Runtime  # noqa: E402
from tokenward.storage.memory import MemoryStore  # noqa: E402
from tokenward.storage.memory_cache import MemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def make_runtime(clock):
    """Build an in-memory Runtime on the shared FixedClock; kwargs override settings."""

    def _make(**overrides) -> Runtime:
        settings = get_settings().model_copy(update=overrides)
        return Runtime(
            settings,
            store=MemoryStore(),
            cache=MemoryCache(clock),
            clock=clock,
        )

    return _make


@pytest.fixture
def runtime(make_runtime):
    return make_runtime()


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

import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Point the secrets file at a temp dir before any imports that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="homestead_test_")
os.environ.setdefault("SECRETS_FILE", os.path.join(_test_tmp_dir, "secrets.env"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# Cheap argon2 parameters keep the suite fast; production defaults are exercised in test_passwords
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("SESSION_PRUNE_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from homestead.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    """Fresh store, rate buckets and settings for every test; the secrets file is shared."""
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def client():
    """HTTP client over the app; lifespan is not entered so the runtime stays the reset one."""
    from homestead import app as app_module

    return TestClient(app_module.app)


def pytest_pyfunc_call(pyfuncitem):
    # Run ``async def`` tests without a plugin
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    kwargs = {
        name: pyfuncitem.funcargs[name]
        for name in pyfuncitem._fixtureinfo.argnames
        if name in pyfuncitem.funcargs
    }
    asyncio.run(pyfuncitem.obj(**kwargs))
    return True

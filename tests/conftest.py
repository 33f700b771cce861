import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize the runtime
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.pop("DATA_DIR", None)
os.environ.pop("CLIENT_STORAGE_PATH", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taskboard.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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

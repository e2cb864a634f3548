import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Base64 of a 40-byte key
os.environ.setdefault("JWT_SECRET", "c2Vzc2lvbmd1YXJkLXRlc3Qtc2lnbmluZy1rZXktMDEyMzQ1Njc4OQ==")
# Blank Redis URL keeps every test on the process-local cache so rate-limit
# windows never leak between tests through a shared server
os.environ["REDIS_URL"] = ""
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("GUEST_IP_HASH_SALT", "test-salt")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault(
    "OAUTH_GOOGLE_REDIRECT_URI", "http://testserver/api/v1/auth/oauth/google/callback"
)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402


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

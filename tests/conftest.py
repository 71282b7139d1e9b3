import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment has to be in place before anything imports filehaven.config
_test_tmp_dir = tempfile.mkdtemp(prefix="filehaven_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AUTH_SECRET", "test-auth-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("API_ACCESS_CONTACT", "ops@filehaven.test")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from filehaven.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from filehaven.service.tokens import build_claims  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the memory store never reloads another test's users
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def api_key():
    return os.environ["API_KEY"]


@pytest.fixture
def api_headers(api_key):
    return {"x-api-key": api_key}


@pytest.fixture
def session_cookie():
    """Build a signed session cookie for a freshly stored identity."""

    def _make(email: str = "member@example.com", role: str = "user", provider: str = "credentials"):
        runtime = get_runtime()
        user = runtime.store.get_user_by_email(email) or runtime.store.create_user(
            email, "Member", provider=provider, role=role
        )
        token = runtime.tokens.encode(build_claims(user))
        return runtime.settings.session_cookie_name, token, user

    return _make


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

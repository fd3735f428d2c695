import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Must run before anything imports realmgate.config
_test_tmp_dir = tempfile.mkdtemp(prefix="realmgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_ISSUER", "auth.test")
os.environ.setdefault("SESSION_PURGE_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from realmgate.service.passwords import Argon2PasswordHasher  # noqa: E402
from realmgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from realmgate.storage.models import Client, Realm, new_id  # noqa: E402


class PlainHasher:
    """Reversible stand-in so service tests do not pay for argon2 rounds."""

    def hash(self, password: str) -> str:
        return f"plain${password}"

    def verify(self, password: str, hashed: str) -> bool:
        return hashed == f"plain${password}"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from realmgate.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def fast_runtime(runtime):
    """Runtime whose auth service hashes with PlainHasher."""
    runtime.hasher = PlainHasher()
    runtime.auth.hasher = runtime.hasher
    return runtime


def make_realm_client(store, *, max_sessions=1, reuse_limit=None, realm_reuse_limit=2, **client_kwargs):
    realm = store.create_realm(
        Realm(
            id=new_id(),
            name="acme",
            slug="acme",
            refresh_token_reuse_limit=realm_reuse_limit,
        )
    )
    client = store.create_client(
        Client(
            id=new_id(),
            realm_id=realm.id,
            name="web",
            max_concurrent_sessions=max_sessions,
            refresh_token_reuse_limit=reuse_limit,
            **client_kwargs,
        )
    )
    return realm, client


@pytest.fixture
def pair_factory():
    return make_realm_client


@pytest.fixture
def plain_hasher():
    return PlainHasher()


@pytest.fixture
def argon2_hasher():
    return Argon2PasswordHasher()


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

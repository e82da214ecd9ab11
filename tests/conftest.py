import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docrecon.cache import SnapshotCache
from docrecon.session import SessionProvider
from docrecon.store import ResultStore
from tests.helpers import (
    SOURCE_TENANT,
    TARGET_TENANT,
    FakeClient,
    FakeSharePoint,
    InMemoryCredentialStore,
    cookies_for,
    default_connections,
)


@pytest.fixture(autouse=True)
def _isolated_dirs(tmp_path, monkeypatch):
    """Keep every test away from the real XDG directories."""
    monkeypatch.setenv("DOCRECON_CREDENTIALS_DIR", str(tmp_path / "xdg" / "credentials"))
    monkeypatch.setenv("DOCRECON_RESULTS_DIR", str(tmp_path / "xdg" / "results"))
    monkeypatch.setenv("DOCRECON_CACHE_DIR", str(tmp_path / "xdg" / "cache"))


@pytest.fixture
def world():
    return FakeSharePoint()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore(
        [
            cookies_for(f"{SOURCE_TENANT}.sharepoint.com", "source"),
            cookies_for(f"{TARGET_TENANT}.sharepoint.com", "target"),
        ]
    )


@pytest.fixture
def provider(world, credential_store):
    return SessionProvider(
        credential_store,
        default_connections(),
        client_factory=lambda credentials: FakeClient(world, credentials),
    )


@pytest.fixture
def cache(tmp_path):
    return SnapshotCache(tmp_path / "cache")


@pytest.fixture
def store(tmp_path):
    return ResultStore(tmp_path / "results")

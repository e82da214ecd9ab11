"""Tests for the snapshot cache."""

from __future__ import annotations

from datetime import timedelta

import pytest

from docrecon.cache import SnapshotCache, cache_key
from docrecon.core.json import dumps_bytes, loads
from docrecon.core.timestamps import utc_now
from tests.helpers import SOURCE_ROOT, make_doc

SITE = f"{SOURCE_ROOT}/sites/hr"


def test_cache_key_is_case_and_slash_insensitive():
    assert cache_key(SITE, "Documents") == cache_key(SITE.upper() + "/", "DOCUMENTS")
    assert cache_key(SITE, "Documents") != cache_key(SITE, "Archive")
    assert len(cache_key(SITE, "Documents")) == 32
    assert all(ch in "0123456789abcdef" for ch in cache_key(SITE, "Documents"))


@pytest.mark.asyncio
async def test_put_then_get_round_trip(tmp_path):
    cache = SnapshotCache(tmp_path)
    docs = [make_doc(SITE, "a.txt", item_id=1), make_doc(SITE, "sub/b.txt", item_id=2, size=5)]
    assert await cache.put(SITE, "Documents", docs) is True

    cached = await cache.try_get(SITE, "Documents", ttl_hours=48)
    assert cached is not None
    assert [d.item_id for d in cached] == [1, 2]
    assert [d.canonical_relative_path for d in cached] == ["a.txt", "sub/b.txt"]
    assert not list(tmp_path.glob("*.tmp"))


@pytest.mark.asyncio
async def test_missing_entry_is_a_miss(tmp_path):
    assert await SnapshotCache(tmp_path).try_get(SITE, "Documents") is None


@pytest.mark.asyncio
async def test_expired_entry_is_deleted(tmp_path):
    cache = SnapshotCache(tmp_path)
    await cache.put(SITE, "Documents", [make_doc(SITE, "a.txt")], now=utc_now() - timedelta(hours=49))
    path = cache.path_for(SITE, "Documents")
    assert path.exists()

    assert await cache.try_get(SITE, "Documents", ttl_hours=48) is None
    assert not path.exists()


@pytest.mark.asyncio
async def test_entry_within_ttl_is_a_hit(tmp_path):
    cache = SnapshotCache(tmp_path)
    await cache.put(SITE, "Documents", [make_doc(SITE, "a.txt")], now=utc_now() - timedelta(hours=47))
    assert await cache.try_get(SITE, "Documents", ttl_hours=48) is not None


@pytest.mark.asyncio
async def test_canonical_paths_are_recomputed_on_read(tmp_path):
    cache = SnapshotCache(tmp_path)
    await cache.put(SITE, "Documents", [make_doc(SITE, "Folder/A.txt")])
    path = cache.path_for(SITE, "Documents")
    data = loads(path.read_bytes())
    data["documents"][0]["canonical_relative_path"] = "stale/value"
    path.write_bytes(dumps_bytes(data))

    [doc] = await cache.try_get(SITE, "Documents")
    assert doc.canonical_relative_path == "folder/a.txt"


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [b"{not json", b"[]", b'{"cached_at": "yesterday"}'])
async def test_corrupt_entry_is_a_miss(tmp_path, content):
    cache = SnapshotCache(tmp_path)
    path = cache.path_for(SITE, "Documents")
    path.write_bytes(content)
    assert await cache.try_get(SITE, "Documents") is None


@pytest.mark.asyncio
async def test_write_failure_is_swallowed(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    cache = SnapshotCache(blocker / "cache")
    assert await cache.put(SITE, "Documents", [make_doc(SITE, "a.txt")]) is False


@pytest.mark.asyncio
async def test_clear_removes_entries(tmp_path):
    cache = SnapshotCache(tmp_path)
    await cache.put(SITE, "Documents", [])
    await cache.put(SITE, "Archive", [])
    assert cache.clear() == 2
    assert await cache.try_get(SITE, "Documents") is None
    assert SnapshotCache(tmp_path / "missing").clear() == 0

"""File-backed snapshot cache.

One JSON file per (site, library), named by a SHA-256 fingerprint of the
pair. Entries are always written whole to a temporary file and moved into
place, so concurrent runs may refetch but never read a torn file.
"""

from __future__ import annotations

import os
import uuid
from contextlib import suppress
from datetime import datetime
from pathlib import Path

import aiofiles
from pydantic import ValidationError

from docrecon.core.hashing import hash_text_short
from docrecon.core.json import JSONDecodeError, dumps_bytes, loads
from docrecon.core.log import get_logger
from docrecon.core.timestamps import utc_now
from docrecon.models import CacheEntry, DocumentSnapshotItem
from docrecon.normalize import recompute_canonical_paths

logger = get_logger(__name__)

CACHE_KEY_LENGTH = 32
DEFAULT_TTL_HOURS = 48


def cache_key(site_url: str, library_title: str) -> str:
    material = f"{site_url.rstrip('/').lower()}|{library_title.lower()}"
    return hash_text_short(material, CACHE_KEY_LENGTH)


class SnapshotCache:
    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, site_url: str, library_title: str) -> Path:
        return self._directory / f"{cache_key(site_url, library_title)}.json"

    async def try_get(
        self,
        site_url: str,
        library_title: str,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        *,
        now: datetime | None = None,
    ) -> list[DocumentSnapshotItem] | None:
        """Return cached items for the pair, or None on a miss.

        Expired entries are deleted. Unreadable or invalid entries are
        misses. Canonical paths are recomputed from the stored raw paths.
        """
        path = self.path_for(site_url, library_title)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "rb") as fh:
                raw = await fh.read()
            entry = CacheEntry.model_validate(loads(raw))
        except (OSError, JSONDecodeError, ValidationError) as exc:
            logger.warning("cache.unreadable", path=str(path), error=str(exc))
            return None

        if not entry.is_valid(ttl_hours, now):
            logger.info(
                "cache.expired",
                site=site_url,
                library=library_title,
                cached_at=entry.cached_at.isoformat(),
            )
            with suppress(OSError):
                path.unlink()
            return None

        logger.debug("cache.hit", site=site_url, library=library_title, documents=len(entry.documents))
        return recompute_canonical_paths(entry.documents, site_url)

    async def put(
        self,
        site_url: str,
        library_title: str,
        items: list[DocumentSnapshotItem],
        *,
        now: datetime | None = None,
    ) -> bool:
        """Store a snapshot. Failures are logged and reported as False."""
        path = self.path_for(site_url, library_title)
        entry = CacheEntry(
            cached_at=now or utc_now(),
            site_url=site_url,
            library_title=library_title,
            documents=list(items),
        )
        tmp_path = path.with_name(f"{path.stem}.{uuid.uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = dumps_bytes(entry)
            async with aiofiles.open(tmp_path, "wb") as fh:
                await fh.write(payload)
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.warning("cache.write_failed", path=str(path), error=str(exc))
            with suppress(OSError):
                tmp_path.unlink()
            return False
        return True

    def clear(self) -> int:
        """Delete every cache file. Returns the number removed."""
        if not self._directory.exists():
            return 0
        removed = 0
        for path in self._directory.glob("*.json"):
            with suppress(OSError):
                path.unlink()
                removed += 1
        for path in self._directory.glob("*.tmp"):
            with suppress(OSError):
                path.unlink()
        return removed


__all__ = ["CACHE_KEY_LENGTH", "DEFAULT_TTL_HOURS", "SnapshotCache", "cache_key"]

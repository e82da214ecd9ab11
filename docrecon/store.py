"""Persistence of run results.

Each run is stored as ``{task_id}_{YYYYmmdd_HHMMSS_ffffff}.json`` where the
timestamp is the run's start time in UTC, so the most recent result for a
task is the lexicographically greatest file name.

Results can hold hundreds of thousands of comparison records. Writes emit
the scalar fields first and then one site result at a time; reads parse
the header incrementally and stream site results back with ijson.
"""

from __future__ import annotations

import os
import re
import uuid
from contextlib import suppress
from pathlib import Path
from typing import Any

import aiofiles
import ijson
from pydantic import ValidationError

from docrecon.core.json import dumps_bytes
from docrecon.core.log import get_logger
from docrecon.core.paths import safe_path_component
from docrecon.errors import PersistenceError
from docrecon.models import RunResult, SitePairResult

logger = get_logger(__name__)

_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
_SITE_RESULTS_KEY = "site_results"


def result_file_name(result: RunResult) -> str:
    return f"{safe_path_component(result.task_id, fallback='task')}_{result.executed_at:{_TIMESTAMP_FORMAT}}.json"


async def _read_header(path: Path) -> dict[str, Any]:
    """Collect every top-level field up to ``site_results``."""
    header: dict[str, Any] = {}
    key: str | None = None
    builder: ijson.ObjectBuilder | None = None
    async with aiofiles.open(path, "rb") as fh:
        async for prefix, event, value in ijson.parse_async(fh, use_float=True):
            if prefix == "" and event in ("map_key", "end_map"):
                if builder is not None and key is not None:
                    header[key] = builder.value
                    builder = None
                if event == "end_map" or value == _SITE_RESULTS_KEY:
                    break
                key = value
                builder = ijson.ObjectBuilder()
                continue
            if builder is not None:
                builder.event(event, value)
    return header


async def _read_site_results(path: Path) -> list[SitePairResult]:
    results: list[SitePairResult] = []
    async with aiofiles.open(path, "rb") as fh:
        async for item in ijson.items_async(fh, f"{_SITE_RESULTS_KEY}.item", use_float=True):
            results.append(SitePairResult.model_validate(item))
    return results


class ResultStore:
    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, result: RunResult) -> Path:
        return self._directory / result_file_name(result)

    async def save(self, result: RunResult) -> Path:
        """Stream ``result`` to disk, replacing any earlier save of the same run."""
        path = self.path_for(result)
        tmp_path = path.with_name(f".{path.stem}.{uuid.uuid4().hex}.tmp")
        header = result.model_dump(mode="json", exclude={_SITE_RESULTS_KEY})
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as fh:
                await fh.write(b"{")
                for key, value in header.items():
                    await fh.write(dumps_bytes(key) + b":" + dumps_bytes(value) + b",")
                await fh.write(dumps_bytes(_SITE_RESULTS_KEY) + b":[")
                for index, site_result in enumerate(result.site_results):
                    if index:
                        await fh.write(b",")
                    await fh.write(dumps_bytes(site_result))
                await fh.write(b"]}")
            os.replace(tmp_path, path)
        except OSError as exc:
            with suppress(OSError):
                tmp_path.unlink()
            raise PersistenceError(f"Failed to save run result to {path}: {exc}") from exc
        logger.debug("store.saved", path=str(path), pairs=len(result.site_results))
        return path

    async def load(self, path: Path) -> RunResult:
        path = Path(path)
        try:
            header = await _read_header(path)
            site_results = await _read_site_results(path)
            return RunResult.model_validate({**header, _SITE_RESULTS_KEY: site_results})
        except (OSError, ijson.JSONError, ValidationError) as exc:
            raise PersistenceError(f"Failed to load run result {path}: {exc}") from exc

    def list_result_files(self, task_id: str) -> list[Path]:
        """Result files for ``task_id``, newest first."""
        if not self._directory.exists():
            return []
        pattern = re.compile(
            rf"^{re.escape(safe_path_component(task_id, fallback='task'))}_\d{{8}}_\d{{6}}_\d{{6}}\.json$"
        )
        files = [path for path in self._directory.iterdir() if pattern.match(path.name)]
        return sorted(files, key=lambda p: p.name, reverse=True)

    async def latest(self, task_id: str) -> RunResult | None:
        for path in self.list_result_files(task_id):
            try:
                return await self.load(path)
            except PersistenceError as exc:
                logger.warning("store.unreadable_result", path=str(path), error=str(exc))
        return None

    def delete_results(self, task_id: str) -> int:
        removed = 0
        for path in self.list_result_files(task_id):
            with suppress(OSError):
                path.unlink()
                removed += 1
        return removed


__all__ = ["ResultStore", "result_file_name"]

"""Comparison task configuration.

A task file is JSON::

    {
      "task_id": "hr-migration",
      "source_connection_id": "old",
      "target_connection_id": "new",
      "connections": [
        {"id": "old", "tenant_name": "contoso"},
        {"id": "new", "tenant_name": "fabrikam"}
      ],
      "site_pairs": [
        {"source_url": "https://contoso.sharepoint.com/sites/HR",
         "target_url": "https://fabrikam.sharepoint.com/sites/HR"}
      ]
    }
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from docrecon.core.json import JSONDecodeError, loads
from docrecon.credentials import ConnectionConfig, StaticConnectionRegistry
from docrecon.errors import ConfigError
from docrecon.models import SitePair

DEFAULT_EXCLUDED_LIBRARIES: tuple[str, ...] = (
    "Style Library",
    "Form Templates",
    "Site Collection Documents",
    "Site Collection Images",
    "_catalogs/hubsite",
    "Preservation Hold Library",
    "appdata",
)


class ComparisonConfig(BaseModel):
    task_id: str
    source_connection_id: str
    target_connection_id: str
    site_pairs: list[SitePair] = Field(default_factory=list)
    excluded_libraries: list[str] = Field(default_factory=list)
    include_hidden_libraries: bool = False
    include_special_pages: bool = False
    use_fuzzy_normalization: bool = True
    use_cache: bool = True
    cache_ttl_hours: float = Field(default=48, gt=0)
    # Persist a checkpoint after this many completed pairs; 0 disables.
    checkpoint_interval: int = Field(default=5, ge=0)

    @field_validator("task_id", "source_connection_id", "target_connection_id")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    @property
    def all_excluded_libraries(self) -> list[str]:
        """Default denylist plus configured names, case-insensitively unique."""
        merged: list[str] = []
        seen: set[str] = set()
        for name in (*DEFAULT_EXCLUDED_LIBRARIES, *self.excluded_libraries):
            key = name.strip().lower()
            if key and key not in seen:
                seen.add(key)
                merged.append(name.strip())
        return merged

    def is_excluded_library(self, title: str, root_folder_url: str = "") -> bool:
        """Match on title, or on the tail of the library's root folder URL."""
        title_key = title.strip().lower()
        url_key = root_folder_url.strip().rstrip("/").lower()
        for name in self.all_excluded_libraries:
            key = name.lower()
            if title_key == key:
                return True
            if url_key and (url_key == key or url_key.endswith("/" + key)):
                return True
        return False


class TaskFile(ComparisonConfig):
    connections: list[ConnectionConfig] = Field(default_factory=list)

    def registry(self) -> StaticConnectionRegistry:
        return StaticConnectionRegistry(self.connections)


def load_task_file(path: Path) -> TaskFile:
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise ConfigError(f"Task file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read task file {path}: {exc}") from exc
    try:
        data = loads(raw)
    except JSONDecodeError as exc:
        raise ConfigError(f"Task file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Task file {path} must contain a JSON object")
    try:
        return TaskFile.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid task file {path}: {exc}") from exc


__all__ = ["ComparisonConfig", "DEFAULT_EXCLUDED_LIBRARIES", "TaskFile", "load_task_file"]

"""Tests for task file loading and library exclusion."""

from __future__ import annotations

import pytest

from docrecon.config import DEFAULT_EXCLUDED_LIBRARIES, ComparisonConfig, load_task_file
from docrecon.core.json import dumps
from docrecon.errors import ConfigError

TASK = {
    "task_id": "hr-migration",
    "source_connection_id": "old",
    "target_connection_id": "new",
    "connections": [
        {"id": "old", "tenant_name": "contoso"},
        {"id": "new", "tenant_name": "Fabrikam.SharePoint.com"},
    ],
    "site_pairs": [
        {
            "source_url": "https://contoso.sharepoint.com/sites/HR",
            "target_url": "https://fabrikam.sharepoint.com/sites/HR",
        }
    ],
    "excluded_libraries": ["Drafts"],
}


def _write(tmp_path, content):
    path = tmp_path / "task.json"
    path.write_text(content if isinstance(content, str) else dumps(content), encoding="utf-8")
    return path


def test_load_task_file(tmp_path):
    task = load_task_file(_write(tmp_path, TASK))
    assert task.task_id == "hr-migration"
    assert task.use_cache is True
    assert task.cache_ttl_hours == 48
    assert task.use_fuzzy_normalization is True
    assert task.include_hidden_libraries is False
    assert len(task.site_pairs) == 1

    registry = task.registry()
    assert registry.get_connection("new").tenant_domain == "fabrikam.sharepoint.com"
    assert registry.get_connection("missing") is None


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[1, 2]",
        dumps({**TASK, "task_id": " "}),
        dumps({**TASK, "cache_ttl_hours": 0}),
        dumps({**TASK, "site_pairs": [{"source_url": "", "target_url": "x"}]}),
    ],
)
def test_invalid_task_files_raise_config_error(tmp_path, content):
    with pytest.raises(ConfigError):
        load_task_file(_write(tmp_path, content))


def test_missing_task_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_task_file(tmp_path / "nope.json")


def _config(**overrides) -> ComparisonConfig:
    data = {"task_id": "t", "source_connection_id": "a", "target_connection_id": "b", **overrides}
    return ComparisonConfig(**data)


def test_excluded_libraries_merge_defaults_case_insensitively():
    config = _config(excluded_libraries=["drafts", "STYLE LIBRARY", "Drafts", " "])
    merged = config.all_excluded_libraries
    assert merged[: len(DEFAULT_EXCLUDED_LIBRARIES)] == list(DEFAULT_EXCLUDED_LIBRARIES)
    assert merged[len(DEFAULT_EXCLUDED_LIBRARIES) :] == ["drafts"]


@pytest.mark.parametrize(
    "title,root_folder_url,expected",
    [
        ("Style Library", "", True),
        ("style library", "", True),
        ("Drafts", "", True),
        ("Documents", "/sites/hr/Shared Documents", False),
        ("Hub", "/sites/hr/_catalogs/hubsite", True),
        ("App Data", "/sites/hr/appdata/", True),
        ("myappdata", "/sites/hr/myappdata", False),
    ],
)
def test_is_excluded_library(title, root_folder_url, expected):
    config = _config(excluded_libraries=["Drafts"])
    assert config.is_excluded_library(title, root_folder_url) is expected

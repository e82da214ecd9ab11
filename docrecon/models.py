"""Data model for reconciliation runs.

Everything that is persisted (run results, cache entries) is a pydantic
model so the same classes serialize to disk and validate on the way back.
Summaries are derived on demand by a single pass over records rather than
kept as running counters.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Iterator
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from docrecon.core.log import get_logger
from docrecon.core.timestamps import ensure_utc, hours_between, utc_now

logger = get_logger(__name__)

# A target modified more than this long before the source is considered stale.
NEWER_AT_SOURCE_HOURS = 24.0
SIZE_ISSUE_MIN_SOURCE_BYTES = 50 * 1024
SIZE_ISSUE_MIN_RATIO = 0.30


class ItemKind(str, Enum):
    FILE = "File"
    FOLDER = "Folder"


class ComparisonStatus(str, Enum):
    FOUND = "Found"
    SIZE_ISSUE = "SizeIssue"
    SOURCE_ONLY = "SourceOnly"
    TARGET_ONLY = "TargetOnly"


class RunStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


def _utc_or_none(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_utc(value)


class SitePair(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_url: str
    target_url: str

    @field_validator("source_url", "target_url")
    @classmethod
    def non_empty_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Site URL cannot be empty")
        return v.strip()


class DocumentSnapshotItem(BaseModel):
    """One file or folder seen in a library on one side."""

    item_id: int
    file_name: str
    server_relative_path: str
    canonical_relative_path: str = ""
    size_bytes: int = Field(default=0, ge=0)
    version_count: int = Field(default=1, ge=0)
    item_kind: ItemKind = ItemKind.FILE
    created: datetime | None = None
    modified: datetime | None = None
    library_title: str = ""

    @field_validator("created", "modified")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return _utc_or_none(v)

    @property
    def is_folder(self) -> bool:
        return self.item_kind is ItemKind.FOLDER


class ComparisonRecord(BaseModel):
    """One row of the reconciliation report."""

    source_site_url: str
    target_site_url: str
    library_name: str
    file_name: str
    extension: str = ""
    relative_path: str
    item_kind: ItemKind = ItemKind.FILE
    status: ComparisonStatus

    source_item_id: int | None = None
    source_size_bytes: int | None = None
    source_version_count: int | None = None
    source_url: str | None = None
    source_created: datetime | None = None
    source_modified: datetime | None = None

    target_item_id: int | None = None
    target_size_bytes: int | None = None
    target_version_count: int | None = None
    target_url: str | None = None
    target_created: datetime | None = None
    target_modified: datetime | None = None

    @field_validator("source_created", "source_modified", "target_created", "target_modified")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return _utc_or_none(v)

    @model_validator(mode="after")
    def sides_match_status(self) -> ComparisonRecord:
        has_source = self.source_item_id is not None
        has_target = self.target_item_id is not None
        if has_source != (self.status is not ComparisonStatus.TARGET_ONLY):
            raise ValueError(f"source item presence does not agree with status {self.status.value}")
        if has_target != (self.status is not ComparisonStatus.SOURCE_ONLY):
            raise ValueError(f"target item presence does not agree with status {self.status.value}")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_size_issue(self) -> bool:
        return self.status is ComparisonStatus.SIZE_ISSUE

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_newer_at_source(self) -> bool:
        if self.status not in (ComparisonStatus.FOUND, ComparisonStatus.SIZE_ISSUE):
            return False
        if self.source_modified is None or self.target_modified is None:
            return False
        return hours_between(self.source_modified, self.target_modified) > NEWER_AT_SOURCE_HOURS

    @computed_field  # type: ignore[prop-decorator]
    @property
    def size_difference_percent(self) -> float | None:
        if self.source_size_bytes is None or self.target_size_bytes is None:
            return None
        if self.source_size_bytes == 0:
            return 0.0 if self.target_size_bytes == 0 else None
        return (self.target_size_bytes - self.source_size_bytes) / self.source_size_bytes * 100.0


class RunSummary(BaseModel):
    found: int = 0
    size_issues: int = 0
    source_only: int = 0
    target_only: int = 0
    newer_at_source: int = 0
    total: int = 0

    @classmethod
    def from_records(cls, records: Iterable[ComparisonRecord]) -> RunSummary:
        counts = {status: 0 for status in ComparisonStatus}
        newer = 0
        total = 0
        for record in records:
            counts[record.status] += 1
            if record.is_newer_at_source:
                newer += 1
            total += 1
        return cls(
            # "found" means present on both sides, size issue or not
            found=counts[ComparisonStatus.FOUND] + counts[ComparisonStatus.SIZE_ISSUE],
            size_issues=counts[ComparisonStatus.SIZE_ISSUE],
            source_only=counts[ComparisonStatus.SOURCE_ONLY],
            target_only=counts[ComparisonStatus.TARGET_ONLY],
            newer_at_source=newer,
            total=total,
        )

    @property
    def total_source_documents(self) -> int:
        return self.found + self.source_only

    @property
    def total_target_documents(self) -> int:
        return self.found + self.target_only

    @property
    def percent_found(self) -> float:
        if self.total == 0:
            return 0.0
        return self.found / self.total * 100.0

    @property
    def migration_completeness_percent(self) -> float:
        """Share of source documents present on the target."""
        if self.total_source_documents == 0:
            return 100.0
        return self.found / self.total_source_documents * 100.0


class LibraryReconciliation(BaseModel):
    library_title: str
    records: list[ComparisonRecord] = Field(default_factory=list)
    source_document_count: int = 0
    target_document_count: int = 0
    duplicates_removed: int = 0
    target_duplicates: int = 0
    source_from_cache: bool = False
    target_from_cache: bool = False
    missing_on_target: bool = False
    error_message: str | None = None

    @property
    def summary(self) -> RunSummary:
        return RunSummary.from_records(self.records)


class SitePairResult(BaseModel):
    source_site_url: str
    target_site_url: str
    source_site_title: str | None = None
    target_site_title: str | None = None
    success: bool = True
    error_message: str | None = None
    libraries: list[LibraryReconciliation] = Field(default_factory=list)

    @property
    def records(self) -> list[ComparisonRecord]:
        return [record for library in self.libraries for record in library.records]

    @property
    def libraries_processed(self) -> int:
        return len(self.libraries)

    @property
    def summary(self) -> RunSummary:
        return RunSummary.from_records(self.records)

    @property
    def has_issues(self) -> bool:
        if not self.success:
            return True
        if any(library.error_message for library in self.libraries):
            return True
        return any(
            record.status is not ComparisonStatus.FOUND or record.is_newer_at_source
            for record in self.records
        )

    @property
    def total_source_size_bytes(self) -> int:
        return sum(r.source_size_bytes or 0 for r in self.records if r.item_kind is ItemKind.FILE)

    @property
    def total_target_size_bytes(self) -> int:
        return sum(r.target_size_bytes or 0 for r in self.records if r.item_kind is ItemKind.FILE)

    @property
    def average_source_versions(self) -> float:
        counts = [r.source_version_count for r in self.records if r.source_version_count is not None]
        return sum(counts) / len(counts) if counts else 0.0

    @property
    def average_target_versions(self) -> float:
        counts = [r.target_version_count for r in self.records if r.target_version_count is not None]
        return sum(counts) / len(counts) if counts else 0.0


def _new_run_id() -> str:
    return uuid.uuid4().hex


class RunResult(BaseModel):
    """Top-level artifact of one run.

    Created at run start, grown as pairs complete, sealed when the run
    ends. Persisted files are named from ``task_id`` and ``executed_at``.
    """

    run_id: str = Field(default_factory=_new_run_id)
    task_id: str
    executed_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    success: bool = False
    error_message: str | None = None
    total_pairs_processed: int = 0
    successful_pairs: int = 0
    failed_pairs: int = 0
    throttle_retry_count: int = 0
    site_results: list[SitePairResult] = Field(default_factory=list)
    execution_log: list[str] = Field(default_factory=list)

    @field_validator("executed_at", "completed_at")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return _utc_or_none(v)

    def log(self, message: str) -> None:
        self.execution_log.append(f"[{datetime.now():%H:%M:%S}] {message}")
        logger.info("run.log", task_id=self.task_id, run_id=self.run_id, message=message)

    def add_pair_result(self, result: SitePairResult) -> None:
        self.site_results.append(result)
        self.total_pairs_processed += 1
        if result.success:
            self.successful_pairs += 1
        else:
            self.failed_pairs += 1

    def iter_records(self) -> Iterator[ComparisonRecord]:
        for site_result in self.site_results:
            for library in site_result.libraries:
                yield from library.records

    def summary(self) -> RunSummary:
        return RunSummary.from_records(self.iter_records())

    def sites_with_issues(self) -> list[SitePairResult]:
        return [result for result in self.site_results if result.has_issues]

    def completed_source_urls(self) -> set[str]:
        return {site_key(r.source_site_url) for r in self.site_results if r.success}

    def seal(self, status: RunStatus, error_message: str | None = None) -> None:
        self.completed_at = utc_now()
        self.status = status
        if error_message is not None:
            self.error_message = error_message
        self.success = status is RunStatus.COMPLETED and self.failed_pairs == 0


class CacheEntry(BaseModel):
    cached_at: datetime
    site_url: str
    library_title: str
    documents: list[DocumentSnapshotItem] = Field(default_factory=list)

    @field_validator("cached_at")
    @classmethod
    def as_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def is_valid(self, ttl_hours: float, now: datetime | None = None) -> bool:
        now = ensure_utc(now) if now is not None else utc_now()
        return now - self.cached_at < timedelta(hours=ttl_hours)


class ProgressEvent(BaseModel):
    current_index: int
    total_count: int
    current_site_url: str = ""
    message: str = ""
    completed_pair: SitePairResult | None = None

    @property
    def percent_complete(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return min(100.0, self.current_index / self.total_count * 100.0)


def site_key(url: str) -> str:
    """Comparison key for site URLs: case-insensitive, trailing slash ignored."""
    return url.strip().rstrip("/").lower()


__all__ = [
    "CacheEntry",
    "ComparisonRecord",
    "ComparisonStatus",
    "DocumentSnapshotItem",
    "ItemKind",
    "LibraryReconciliation",
    "ProgressEvent",
    "RunResult",
    "RunStatus",
    "RunSummary",
    "SitePair",
    "SitePairResult",
    "site_key",
]

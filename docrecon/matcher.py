"""Document matcher: reconcile one library's source and target snapshots."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from docrecon.core.log import get_logger
from docrecon.models import (
    SIZE_ISSUE_MIN_RATIO,
    SIZE_ISSUE_MIN_SOURCE_BYTES,
    ComparisonRecord,
    ComparisonStatus,
    DocumentSnapshotItem,
    ItemKind,
)
from docrecon.normalize import normalize_path

logger = get_logger(__name__)


@dataclass
class MatchResult:
    """Records for one library plus duplicate bookkeeping.

    Behaves as a read-only sequence of ``ComparisonRecord``: matched and
    source-only records first, in source order, then target-only records
    in target order.
    """

    records: list[ComparisonRecord] = field(default_factory=list)
    duplicates_removed: int = 0
    target_duplicates: int = 0

    def __iter__(self) -> Iterator[ComparisonRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, index: int) -> ComparisonRecord:
        return self.records[index]


def is_size_issue(source_size: int, target_size: int) -> bool:
    if source_size <= 0:
        return False
    if target_size == 0:
        return True
    if source_size >= SIZE_ISSUE_MIN_SOURCE_BYTES:
        return target_size / source_size < SIZE_ISSUE_MIN_RATIO
    return False


def _origin(site_url: str) -> str:
    parts = urlsplit(site_url)
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}"


def _absolute_url(site_url: str, server_relative_path: str) -> str:
    return _origin(site_url) + server_relative_path


def _extension(file_name: str) -> str:
    dot = file_name.rfind(".")
    if dot <= 0:
        return ""
    return file_name[dot:].lower()


class _RecordBuilder:
    def __init__(self, source_site_url: str, target_site_url: str, library_name: str) -> None:
        self.source_site_url = source_site_url
        self.target_site_url = target_site_url
        self.library_name = library_name

    def _side(self, prefix: str, site_url: str, item: DocumentSnapshotItem) -> dict:
        return {
            f"{prefix}_item_id": item.item_id,
            f"{prefix}_size_bytes": item.size_bytes,
            f"{prefix}_version_count": item.version_count,
            f"{prefix}_url": _absolute_url(site_url, item.server_relative_path),
            f"{prefix}_created": item.created,
            f"{prefix}_modified": item.modified,
        }

    def build(
        self,
        status: ComparisonStatus,
        source: DocumentSnapshotItem | None,
        target: DocumentSnapshotItem | None,
    ) -> ComparisonRecord:
        primary = source if source is not None else target
        assert primary is not None
        fields: dict = {
            "source_site_url": self.source_site_url,
            "target_site_url": self.target_site_url,
            "library_name": self.library_name,
            "file_name": primary.file_name,
            "extension": "" if primary.is_folder else _extension(primary.file_name),
            "relative_path": primary.canonical_relative_path,
            "item_kind": primary.item_kind,
            "status": status,
        }
        if source is not None:
            fields.update(self._side("source", self.source_site_url, source))
        if target is not None:
            fields.update(self._side("target", self.target_site_url, target))
        return ComparisonRecord(**fields)


def reconcile(
    source_docs: Sequence[DocumentSnapshotItem],
    target_docs: Sequence[DocumentSnapshotItem],
    use_fuzzy_fallback: bool,
    *,
    source_site_url: str = "",
    target_site_url: str = "",
    library_name: str = "",
) -> MatchResult:
    """Match source documents to target documents by canonical path.

    Exact paths are tried first; when ``use_fuzzy_fallback`` is set a miss
    is retried against the target keyed by ``normalize_path``. A matched
    target leaves both indexes so it cannot match twice and so whatever
    remains is target-only.
    """
    result = MatchResult()
    builder = _RecordBuilder(source_site_url, target_site_url, library_name)

    unique_source: dict[str, DocumentSnapshotItem] = {}
    for doc in source_docs:
        unique_source.setdefault(doc.canonical_relative_path, doc)
    result.duplicates_removed = len(source_docs) - len(unique_source)
    if result.duplicates_removed:
        logger.info(
            "matcher.source_duplicates_removed",
            library=library_name,
            removed=result.duplicates_removed,
        )

    exact: dict[str, DocumentSnapshotItem] = {}
    for doc in target_docs:
        if doc.canonical_relative_path in exact:
            result.target_duplicates += 1
            logger.warning(
                "matcher.target_duplicate",
                library=library_name,
                path=doc.canonical_relative_path,
                item_id=doc.item_id,
                kept_item_id=exact[doc.canonical_relative_path].item_id,
            )
            continue
        exact[doc.canonical_relative_path] = doc

    # Normalized key -> target paths in target order. Entries whose path has
    # left the exact index are spent.
    fuzzy: dict[str, list[str]] = {}
    if use_fuzzy_fallback:
        for path in exact:
            fuzzy.setdefault(normalize_path(path), []).append(path)

    for path, source in unique_source.items():
        target_path: str | None = path if path in exact else None
        if target_path is None and use_fuzzy_fallback:
            candidates = fuzzy.get(normalize_path(path), ())
            target_path = next((p for p in candidates if p in exact), None)

        if target_path is None:
            result.records.append(builder.build(ComparisonStatus.SOURCE_ONLY, source, None))
            continue

        target = exact.pop(target_path)

        status = ComparisonStatus.FOUND
        if source.item_kind is ItemKind.FILE and is_size_issue(source.size_bytes, target.size_bytes):
            status = ComparisonStatus.SIZE_ISSUE
        result.records.append(builder.build(status, source, target))

    for target in exact.values():
        result.records.append(builder.build(ComparisonStatus.TARGET_ONLY, None, target))

    return result


__all__ = ["MatchResult", "is_size_issue", "reconcile"]

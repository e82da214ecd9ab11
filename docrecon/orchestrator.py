"""Task orchestrator: drives one reconciliation run across all site pairs.

Pairs are grouped by the host of their source URL so each source domain
gets one session for all of its pairs. Target sessions are likewise shared
per target domain. Within a pair, libraries are handled in the order the
source enumerates them, and the two per-library fetches run concurrently.

Errors below the pair boundary become data: a library that fails to load
is recorded with its error message, a pair that fails is recorded as
failed with its partial comparisons dropped. Rejected credentials are never
a library error; they fail the whole pair so a continued run retries it. Only configuration errors
and unexpected errors outside the pair loop fail the run.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from docrecon.cache import SnapshotCache
from docrecon.cancellation import CancellationToken, is_cancelled
from docrecon.client import LibraryInfo
from docrecon.config import ComparisonConfig
from docrecon.core.log import get_logger
from docrecon.credentials import ReauthHandler
from docrecon.errors import ConfigError, NotFoundError, PersistenceError, is_auth_failure
from docrecon.matcher import reconcile
from docrecon.models import (
    DocumentSnapshotItem,
    LibraryReconciliation,
    ProgressEvent,
    RunResult,
    RunStatus,
    SitePair,
    SitePairResult,
    site_key,
)
from docrecon.session import RunContext, SessionPool, SessionProvider, Side, url_host
from docrecon.store import ResultStore

logger = get_logger(__name__)

ProgressSink = Callable[[ProgressEvent], "Awaitable[None] | None"]


@dataclass
class _Fetched:
    documents: list[DocumentSnapshotItem]
    from_cache: bool


def group_pairs_by_source_host(pairs: Iterable[SitePair]) -> list[tuple[str, list[SitePair]]]:
    """Group pairs by source host, keeping first-appearance order of hosts."""
    groups: dict[str, list[SitePair]] = {}
    for pair in pairs:
        groups.setdefault(url_host(pair.source_url), []).append(pair)
    return list(groups.items())


def filter_libraries(libraries: Iterable[LibraryInfo], config: ComparisonConfig) -> list[LibraryInfo]:
    kept = []
    for library in libraries:
        if not library.is_document_library:
            continue
        if library.hidden and not config.include_hidden_libraries:
            continue
        if config.is_excluded_library(library.title, library.root_folder_url):
            continue
        kept.append(library)
    return kept


class TaskOrchestrator:
    def __init__(
        self,
        session_provider: SessionProvider,
        *,
        cache: SnapshotCache | None = None,
        store: ResultStore | None = None,
        reauth_handler: ReauthHandler | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        self._provider = session_provider
        self._cache = cache
        self._store = store
        self._reauth_handler = reauth_handler
        self._progress = progress

    async def run(
        self,
        config: ComparisonConfig,
        *,
        seed: RunResult | None = None,
        completed_sources: Iterable[str] = (),
        cancellation: CancellationToken | None = None,
    ) -> RunResult:
        """Run every pair in ``config`` and return the sealed result.

        ``seed`` carries pairs from an earlier attempt; pairs whose source
        URL is in ``completed_sources`` are skipped.
        """
        result = seed if seed is not None else RunResult(task_id=config.task_id)
        base_throttle_count = result.throttle_retry_count
        result.log(f"Starting document comparison: {len(config.site_pairs)} site pair(s)")

        try:
            source_connection = self._provider.resolve_connection(config.source_connection_id)
            target_connection = self._provider.resolve_connection(config.target_connection_id)
        except ConfigError as exc:
            result.log(f"Configuration error: {exc}")
            result.seal(RunStatus.FAILED, str(exc))
            await self._persist(result)
            return result

        context = RunContext()
        source_pool = SessionPool(self._provider, context, Side.SOURCE, source_connection, self._reauth_handler)
        target_pool = SessionPool(self._provider, context, Side.TARGET, target_connection, self._reauth_handler)

        status = RunStatus.COMPLETED
        error_message: str | None = None
        try:
            async with source_pool, target_pool:
                status = await self._run_pairs(
                    config,
                    result,
                    source_pool,
                    target_pool,
                    {site_key(url) for url in completed_sources},
                    cancellation,
                    base_throttle_count,
                )
        except Exception as exc:
            logger.exception("orchestrator.run_failed", task_id=config.task_id)
            result.log(f"Comparison failed: {exc}")
            status = RunStatus.FAILED
            error_message = str(exc)
        result.throttle_retry_count = (
            base_throttle_count + source_pool.throttle_retry_count + target_pool.throttle_retry_count
        )

        if status is RunStatus.CANCELLED:
            result.log("Comparison cancelled; partial results kept")
        elif status is RunStatus.COMPLETED:
            summary = result.summary()
            result.log(
                f"Comparison finished: {result.successful_pairs} succeeded, {result.failed_pairs} failed; "
                f"{summary.found} found, {summary.size_issues} size issues, "
                f"{summary.source_only} source only, {summary.target_only} target only"
            )
            if result.throttle_retry_count:
                result.log(f"Throttled requests retried: {result.throttle_retry_count}")
        result.seal(status, error_message)
        await self._persist(result)
        return result

    async def _run_pairs(
        self,
        config: ComparisonConfig,
        result: RunResult,
        source_pool: SessionPool,
        target_pool: SessionPool,
        completed: set[str],
        cancellation: CancellationToken | None,
        base_throttle_count: int,
    ) -> RunStatus:
        total = len(config.site_pairs)
        position = 0
        processed = 0
        for source_host, pairs in group_pairs_by_source_host(config.site_pairs):
            for pair in pairs:
                if is_cancelled(cancellation):
                    return RunStatus.CANCELLED
                position += 1
                if site_key(pair.source_url) in completed:
                    result.log(f"Skipping {pair.source_url}: already completed")
                    await self._emit(
                        ProgressEvent(
                            current_index=position,
                            total_count=total,
                            current_site_url=pair.source_url,
                            message=f"Already completed: {pair.source_url}",
                        )
                    )
                    continue

                result.log(f"Comparing {pair.source_url} -> {pair.target_url}")
                pair_result = await self._process_pair(
                    pair, config, source_pool, target_pool, result, position, total, cancellation
                )
                if pair_result is None:
                    result.log(f"Discarded partial comparison of {pair.source_url}")
                    return RunStatus.CANCELLED

                result.add_pair_result(pair_result)
                if pair_result.success:
                    summary = pair_result.summary
                    result.log(
                        f"Completed {pair.source_url}: {pair_result.libraries_processed} libraries, "
                        f"{summary.found} found, {summary.size_issues} size issues, "
                        f"{summary.source_only} source only, {summary.target_only} target only"
                    )
                else:
                    result.log(f"Failed {pair.source_url}: {pair_result.error_message}")
                await self._emit(
                    ProgressEvent(
                        current_index=position,
                        total_count=total,
                        current_site_url=pair.source_url,
                        message=f"Completed {position} of {total}",
                        completed_pair=pair_result,
                    )
                )

                processed += 1
                if config.checkpoint_interval and processed % config.checkpoint_interval == 0:
                    result.throttle_retry_count = (
                        base_throttle_count + source_pool.throttle_retry_count + target_pool.throttle_retry_count
                    )
                    await self._persist(result)
            await source_pool.close_domain(source_host)
        return RunStatus.COMPLETED

    async def _process_pair(
        self,
        pair: SitePair,
        config: ComparisonConfig,
        source_pool: SessionPool,
        target_pool: SessionPool,
        run: RunResult,
        position: int,
        total: int,
        cancellation: CancellationToken | None,
    ) -> SitePairResult | None:
        """Reconcile one pair. Returns None when cancelled mid-pair."""
        source_domain = url_host(pair.source_url)
        target_domain = url_host(pair.target_url)
        pair_result = SitePairResult(source_site_url=pair.source_url, target_site_url=pair.target_url)
        try:
            source_site = await source_pool.call_with_reauth(
                source_domain, lambda client: client.get_site_info(pair.source_url)
            )
            target_site = await target_pool.call_with_reauth(
                target_domain, lambda client: client.get_site_info(pair.target_url)
            )
            pair_result.source_site_title = source_site.title
            pair_result.target_site_title = target_site.title

            source_libraries = filter_libraries(
                await source_pool.call_with_reauth(
                    source_domain,
                    lambda client: client.get_libraries(pair.source_url, config.include_hidden_libraries),
                ),
                config,
            )
            target_libraries = filter_libraries(
                await target_pool.call_with_reauth(
                    target_domain,
                    lambda client: client.get_libraries(pair.target_url, config.include_hidden_libraries),
                ),
                config,
            )
            target_by_title = {}
            for library in target_libraries:
                target_by_title.setdefault(library.title.lower(), library)

            for index, library in enumerate(source_libraries, start=1):
                if is_cancelled(cancellation):
                    return None
                reconciliation = await self._reconcile_library(
                    pair,
                    library,
                    target_by_title.get(library.title.lower()),
                    config,
                    source_pool,
                    target_pool,
                    run,
                    cancellation,
                )
                if is_cancelled(cancellation):
                    return None
                pair_result.libraries.append(reconciliation)
                await self._emit(
                    ProgressEvent(
                        current_index=position - 1,
                        total_count=total,
                        current_site_url=pair.source_url,
                        message=f"Library {index} of {len(source_libraries)}: {library.title}",
                    )
                )
        except Exception as exc:
            logger.warning("orchestrator.pair_failed", source=pair.source_url, target=pair.target_url, error=str(exc))
            return SitePairResult(
                source_site_url=pair.source_url,
                target_site_url=pair.target_url,
                source_site_title=pair_result.source_site_title,
                target_site_title=pair_result.target_site_title,
                success=False,
                error_message=str(exc),
            )
        return pair_result

    async def _reconcile_library(
        self,
        pair: SitePair,
        library: LibraryInfo,
        target_library: LibraryInfo | None,
        config: ComparisonConfig,
        source_pool: SessionPool,
        target_pool: SessionPool,
        run: RunResult,
        cancellation: CancellationToken | None,
    ) -> LibraryReconciliation:
        reconciliation = LibraryReconciliation(library_title=library.title)
        source_fetch = self._fetch(source_pool, pair.source_url, library.title, config, cancellation)

        if target_library is None:
            target_outcome: _Fetched | BaseException | None = None
            (source_outcome,) = await asyncio.gather(source_fetch, return_exceptions=True)
        else:
            source_outcome, target_outcome = await asyncio.gather(
                source_fetch,
                self._fetch(target_pool, pair.target_url, target_library.title, config, cancellation),
                return_exceptions=True,
            )
        for outcome in (source_outcome, target_outcome):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
        # Re-authentication has already been tried; the pair fails so a resumed run retries it.
        for outcome in (source_outcome, target_outcome):
            if isinstance(outcome, Exception) and is_auth_failure(outcome):
                raise outcome

        if isinstance(source_outcome, Exception):
            reconciliation.error_message = f"Source fetch failed: {source_outcome}"
            run.log(f"Library '{library.title}' skipped: {reconciliation.error_message}")
            return reconciliation
        assert isinstance(source_outcome, _Fetched)
        reconciliation.source_document_count = len(source_outcome.documents)
        reconciliation.source_from_cache = source_outcome.from_cache

        target_documents: list[DocumentSnapshotItem] = []
        if target_outcome is None or isinstance(target_outcome, NotFoundError):
            reconciliation.missing_on_target = True
            run.log(f"Library '{library.title}' not found on target; all documents source only")
        elif isinstance(target_outcome, Exception):
            reconciliation.error_message = f"Target fetch failed: {target_outcome}"
            run.log(f"Library '{library.title}' skipped: {reconciliation.error_message}")
            return reconciliation
        else:
            target_documents = target_outcome.documents
            reconciliation.target_document_count = len(target_documents)
            reconciliation.target_from_cache = target_outcome.from_cache

        matched = reconcile(
            source_outcome.documents,
            target_documents,
            config.use_fuzzy_normalization,
            source_site_url=pair.source_url,
            target_site_url=pair.target_url,
            library_name=library.title,
        )
        reconciliation.records = list(matched)
        reconciliation.duplicates_removed = matched.duplicates_removed
        reconciliation.target_duplicates = matched.target_duplicates
        if matched.duplicates_removed:
            run.log(f"Library '{library.title}': removed {matched.duplicates_removed} duplicate source entries")
        return reconciliation

    async def _fetch(
        self,
        pool: SessionPool,
        site_url: str,
        library_title: str,
        config: ComparisonConfig,
        cancellation: CancellationToken | None,
    ) -> _Fetched:
        use_cache = config.use_cache and self._cache is not None
        if use_cache:
            cached = await self._cache.try_get(site_url, library_title, config.cache_ttl_hours)
            if cached is not None:
                return _Fetched(cached, True)

        documents = await pool.call_with_reauth(
            url_host(site_url),
            lambda client: client.get_documents(
                site_url,
                library_title,
                include_special_pages=config.include_special_pages,
                cancellation=cancellation,
            ),
        )
        # A cancelled fetch may be partial and must not be cached.
        if use_cache and not is_cancelled(cancellation):
            await self._cache.put(site_url, library_title, documents)
        return _Fetched(documents, False)

    async def _emit(self, event: ProgressEvent) -> None:
        if self._progress is None:
            return
        try:
            outcome = self._progress(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("orchestrator.progress_sink_failed", error=str(exc))

    async def _persist(self, result: RunResult) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(result)
        except PersistenceError as exc:
            logger.error("orchestrator.persist_failed", task_id=result.task_id, error=str(exc))
            result.log(f"Could not save results: {exc}")


__all__ = ["ProgressSink", "TaskOrchestrator", "filter_libraries", "group_pairs_by_source_host"]

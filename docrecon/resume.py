"""Resumable runs: continue a task from its most recent persisted result."""

from __future__ import annotations

from docrecon.cancellation import CancellationToken
from docrecon.config import ComparisonConfig
from docrecon.core.log import get_logger
from docrecon.models import RunResult
from docrecon.orchestrator import TaskOrchestrator
from docrecon.store import ResultStore

logger = get_logger(__name__)

CONTINUATION_MARKER = "=== Continuing from previous run {run_id} (started {started}) ==="


def seed_from_previous(previous: RunResult, task_id: str) -> RunResult:
    """Start a new result carrying the successful pairs of ``previous``.

    Failed pairs are dropped so they run again. The previous execution log
    follows a continuation marker line.
    """
    carried = [site_result.model_copy(deep=True) for site_result in previous.site_results if site_result.success]
    seed = RunResult(
        task_id=task_id,
        site_results=carried,
        total_pairs_processed=len(carried),
        successful_pairs=len(carried),
        throttle_retry_count=previous.throttle_retry_count,
    )
    seed.execution_log.append(
        CONTINUATION_MARKER.format(
            run_id=previous.run_id,
            started=previous.executed_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    )
    seed.execution_log.extend(previous.execution_log)
    seed.log(f"Resuming: {len(carried)} site pair(s) already completed")
    return seed


class Reconciler:
    """Entry point for a run, optionally continuing an interrupted one."""

    def __init__(self, orchestrator: TaskOrchestrator, store: ResultStore) -> None:
        self._orchestrator = orchestrator
        self._store = store

    async def run(
        self,
        config: ComparisonConfig,
        continue_from_previous: bool = False,
        cancellation: CancellationToken | None = None,
    ) -> RunResult:
        seed: RunResult | None = None
        completed: set[str] = set()
        if continue_from_previous:
            previous = await self._store.latest(config.task_id)
            if previous is None:
                seed = RunResult(task_id=config.task_id)
                seed.log("No previous result found; starting a fresh comparison")
            else:
                logger.info(
                    "resume.previous_found",
                    task_id=config.task_id,
                    run_id=previous.run_id,
                    successful_pairs=previous.successful_pairs,
                )
                seed = seed_from_previous(previous, config.task_id)
                completed = previous.completed_source_urls()
        return await self._orchestrator.run(
            config,
            seed=seed,
            completed_sources=completed,
            cancellation=cancellation,
        )


__all__ = ["CONTINUATION_MARKER", "Reconciler", "seed_from_previous"]

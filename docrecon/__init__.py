"""docrecon - cross-tenant SharePoint document reconciliation.

Compares document libraries between a source and a target SharePoint
Online tenant after a migration and reports what is missing, truncated or
stale.

Example:
    from docrecon import Reconciler, TaskOrchestrator, SessionProvider
    from docrecon import FileCredentialStore, ResultStore, SnapshotCache
    from docrecon.config import load_task_file

    task = load_task_file("hr-migration.json")
    provider = SessionProvider(FileCredentialStore(creds_dir), task.registry())
    store = ResultStore(results_dir)
    orchestrator = TaskOrchestrator(provider, cache=SnapshotCache(cache_dir), store=store)
    result = await Reconciler(orchestrator, store).run(task, continue_from_previous=True)
    print(result.summary())
"""

from docrecon.cache import SnapshotCache
from docrecon.cancellation import CancellationToken
from docrecon.config import ComparisonConfig, TaskFile, load_task_file
from docrecon.credentials import ConnectionConfig, Credentials, FileCredentialStore
from docrecon.matcher import reconcile
from docrecon.models import (
    ComparisonRecord,
    ComparisonStatus,
    DocumentSnapshotItem,
    ProgressEvent,
    RunResult,
    RunStatus,
    SitePair,
)
from docrecon.normalize import normalize_path
from docrecon.orchestrator import TaskOrchestrator
from docrecon.resume import Reconciler
from docrecon.session import SessionProvider
from docrecon.store import ResultStore

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "ComparisonConfig",
    "ComparisonRecord",
    "ComparisonStatus",
    "ConnectionConfig",
    "Credentials",
    "DocumentSnapshotItem",
    "FileCredentialStore",
    "ProgressEvent",
    "Reconciler",
    "ResultStore",
    "RunResult",
    "RunStatus",
    "SessionProvider",
    "SitePair",
    "SnapshotCache",
    "TaskFile",
    "TaskOrchestrator",
    "load_task_file",
    "normalize_path",
    "reconcile",
]

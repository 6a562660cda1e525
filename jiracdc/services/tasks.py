"""Task implementations and their typed result payloads"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from jiracdc.errors import ValidationError
from jiracdc.services.jira_client import build_jql
from jiracdc.services.ledger import SyncLedger
from jiracdc.services.operation_types import OperationConfig, Task, TaskKind
from jiracdc.services.progress import ProgressTracker
from jiracdc.services.sync_engine import (
    SyncEngine,
    SyncOperationType,
    SyncResult,
    SyncResultStatus,
    project_key_of,
)

logger = logging.getLogger(__name__)

# Reconcile window used before any sync has been recorded for a project.
DEFAULT_RECONCILE_WINDOW = timedelta(hours=24)


@dataclass
class SyncCounters:
    processed_issues: int = 0
    created_files: int = 0
    updated_files: int = 0
    deleted_files: int = 0
    skipped_issues: int = 0
    failed_issues: int = 0
    commits: int = 0

    def __add__(self, other: "SyncCounters") -> "SyncCounters":
        return SyncCounters(
            processed_issues=self.processed_issues + other.processed_issues,
            created_files=self.created_files + other.created_files,
            updated_files=self.updated_files + other.updated_files,
            deleted_files=self.deleted_files + other.deleted_files,
            skipped_issues=self.skipped_issues + other.skipped_issues,
            failed_issues=self.failed_issues + other.failed_issues,
            commits=self.commits + other.commits,
        )

    @classmethod
    def from_results(cls, results: Iterable[SyncResult]) -> "SyncCounters":
        counters = cls()
        commits = set()
        for result in results:
            counters.processed_issues += 1
            if result.status == SyncResultStatus.FAILED:
                counters.failed_issues += 1
            elif result.status == SyncResultStatus.SKIPPED:
                counters.skipped_issues += 1
            elif result.operation_type == SyncOperationType.CREATE:
                counters.created_files += 1
            elif result.operation_type == SyncOperationType.DELETE:
                counters.deleted_files += 1
            else:
                counters.updated_files += 1
            if result.commit_hash:
                commits.add(result.commit_hash)
        counters.commits = len(commits)
        return counters


@dataclass
class InitRepoPayload:
    head: str = ""

    def counters(self) -> SyncCounters:
        return SyncCounters()


@dataclass
class ProjectInfoPayload:
    project_key: str
    name: str = ""
    project_id: str = ""

    def counters(self) -> SyncCounters:
        return SyncCounters()


@dataclass
class SyncPayload:
    results: List[SyncResult] = field(default_factory=list)
    overwrite: bool = False

    def counters(self) -> SyncCounters:
        return SyncCounters.from_results(self.results)


@dataclass
class SourceUpdatesPayload:
    updated_since: datetime
    changed_issues: int = 0

    def counters(self) -> SyncCounters:
        return SyncCounters()


@dataclass
class RepoUpdatePayload:
    head: str = ""

    def counters(self) -> SyncCounters:
        return SyncCounters()


@dataclass
class OrphansPayload:
    orphan_keys: List[str] = field(default_factory=list)

    def counters(self) -> SyncCounters:
        return SyncCounters()


class OperationContext:
    """What the tasks of one operation share: collaborators, config, cancel token and
    the payloads of finished tasks."""

    def __init__(
        self,
        operation_id: str,
        config: OperationConfig,
        engine: SyncEngine,
        cancel_event: threading.Event,
        ledger: Optional[SyncLedger] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.operation_id = operation_id
        self.config = config
        self.engine = engine
        self.cancel_event = cancel_event
        self.ledger = ledger
        self.now = now
        self._results: Dict[TaskKind, Any] = {}
        self._lock = threading.Lock()

    def set_result(self, kind: TaskKind, payload: Any) -> None:
        with self._lock:
            self._results[kind] = payload

    def result_of(self, kind: TaskKind) -> Any:
        with self._lock:
            if kind not in self._results:
                raise ValidationError(f"{kind.value} has not produced a result")
            return self._results[kind]


def run_init_repo(ctx: OperationContext, task: Task, progress: ProgressTracker) -> InitRepoPayload:
    progress.set_total(1)
    head = ctx.engine.writer.init_repository()
    progress.advance(1, f"Repository ready at {head or 'empty HEAD'}")
    return InitRepoPayload(head=head)


def run_fetch_project_info(ctx: OperationContext, task: Task, progress: ProgressTracker) -> ProjectInfoPayload:
    progress.set_total(1)
    project = ctx.engine.client.get_project(ctx.config.project_key, cancel_event=ctx.cancel_event)
    progress.advance(1, f"Found project {project.get('name', ctx.config.project_key)}")
    return ProjectInfoPayload(
        project_key=str(project.get("key") or ctx.config.project_key),
        name=str(project.get("name") or ""),
        project_id=str(project.get("id") or ""),
    )


def run_bootstrap_sync(ctx: OperationContext, task: Task, progress: ProgressTracker) -> SyncPayload:
    overwrite = bool(task.payload.get("overwrite"))
    results = ctx.engine.bootstrap(
        ctx.config.project_key,
        progress=progress,
        cancel_event=ctx.cancel_event,
        page_size=ctx.config.page_size,
        active_only=ctx.config.active_only,
        force_refresh=overwrite or ctx.config.force_refresh,
        issue_filter=ctx.config.issue_filter,
    )
    return SyncPayload(results=results, overwrite=overwrite)


def run_check_source_updates(
    ctx: OperationContext, task: Task, progress: ProgressTracker
) -> SourceUpdatesPayload:
    progress.set_total(1)
    config = ctx.config
    since = config.updated_since
    if since is None and ctx.ledger is not None:
        since = ctx.ledger.get_last_sync(config.project_key)
    if since is None:
        since = ctx.now() - DEFAULT_RECONCILE_WINDOW

    jql = build_jql(
        config.project_key,
        active_only=config.active_only,
        updated_since=since,
        issue_filter=config.issue_filter,
        order_by=None,
        now=ctx.now(),
    )
    page = ctx.engine.client.search_issues(
        jql, start_at=0, max_results=0, cancel_event=ctx.cancel_event
    )
    progress.advance(1, f"{page.total_count} issues updated since {since.isoformat()}")
    return SourceUpdatesPayload(updated_since=since, changed_issues=page.total_count)


def run_update_repo(ctx: OperationContext, task: Task, progress: ProgressTracker) -> RepoUpdatePayload:
    progress.set_total(2)
    ctx.engine.writer.init_repository()
    progress.advance(1)
    head = ctx.engine.writer.pull()
    progress.advance(1, f"Repository at {head or 'empty HEAD'}")
    return RepoUpdatePayload(head=head)


def run_sync_updated_issues(ctx: OperationContext, task: Task, progress: ProgressTracker) -> SyncPayload:
    updates: SourceUpdatesPayload = ctx.result_of(TaskKind.CHECK_SOURCE_UPDATES)
    if updates.changed_issues == 0:
        progress.set_total(0, "No updated issues")
        return SyncPayload()
    results = ctx.engine.synchronize_project(
        ctx.config.project_key,
        force_refresh=ctx.config.force_refresh,
        active_only=ctx.config.active_only,
        updated_since=updates.updated_since,
        issue_filter=ctx.config.issue_filter,
        progress=progress,
        cancel_event=ctx.cancel_event,
        now=ctx.now(),
    )
    return SyncPayload(results=results)


def run_identify_orphans(ctx: OperationContext, task: Task, progress: ProgressTracker) -> OrphansPayload:
    progress.set_total(2)
    project_key = ctx.config.project_key
    ctx.engine.writer.init_repository()
    local = {key for key in ctx.engine.writer.list_issue_keys() if project_key_of(key) == project_key}
    progress.advance(1, f"{len(local)} issue files in repository")
    remote = ctx.engine.collect_source_keys(
        project_key,
        active_only=ctx.config.active_only,
        cancel_event=ctx.cancel_event,
    )
    orphans = sorted(local - remote)
    progress.advance(1, f"{len(orphans)} orphaned issue files")
    return OrphansPayload(orphan_keys=orphans)


def run_remove_orphans(ctx: OperationContext, task: Task, progress: ProgressTracker) -> SyncPayload:
    orphans: OrphansPayload = ctx.result_of(TaskKind.IDENTIFY_ORPHANS)
    results = ctx.engine.remove_issues(
        orphans.orphan_keys,
        progress=progress,
        cancel_event=ctx.cancel_event,
    )
    return SyncPayload(results=results)


TASK_HANDLERS: Dict[TaskKind, Callable[[OperationContext, Task, ProgressTracker], Any]] = {
    TaskKind.INIT_REPO: run_init_repo,
    TaskKind.FETCH_PROJECT_INFO: run_fetch_project_info,
    TaskKind.BOOTSTRAP_SYNC: run_bootstrap_sync,
    TaskKind.CHECK_SOURCE_UPDATES: run_check_source_updates,
    TaskKind.UPDATE_REPO: run_update_repo,
    TaskKind.SYNC_UPDATED_ISSUES: run_sync_updated_issues,
    TaskKind.IDENTIFY_ORPHANS: run_identify_orphans,
    TaskKind.REMOVE_ORPHANS: run_remove_orphans,
}

"""Operation processor: runs task graphs in the background"""

import copy
import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from jiracdc.errors import (
    InvalidOperationStateError,
    OperationCancelledError,
    OperationConflictError,
    OperationNotFoundError,
    ValidationError,
    WaitTimeoutError,
    is_connectivity_error,
)
from jiracdc.services.git_writer import ISSUE_KEY_PATTERN
from jiracdc.services.ledger import SyncLedger
from jiracdc.services.operation_types import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Operation,
    OperationConfig,
    OperationKind,
    OperationResultSummary,
    OperationStatus,
    Task,
    TaskResult,
)
from jiracdc.services.progress import Progress, ProgressBroadcaster, ProgressListener, ProgressTracker
from jiracdc.services.sync_engine import SyncEngine, SyncResult, project_key_of
from jiracdc.services.task_graph import blocked_tasks, build_task_graph, runnable_tasks, validate_task_graph
from jiracdc.services.tasks import TASK_HANDLERS, OperationContext, SyncCounters

logger = logging.getLogger(__name__)

# Kinds whose success moves the project's reconcile cutoff forward.
LEDGER_KINDS = (OperationKind.BOOTSTRAP, OperationKind.FORCED_SYNC, OperationKind.RECONCILE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OperationHandle:
    """Background execution handle of one operation."""

    cancel_event: threading.Event = field(default_factory=threading.Event)
    future: Optional[Future] = None


class OperationProcessor:
    """Owns every operation of a sync target and executes their task graphs.

    All reads return deep copies; all mutations happen under `_lock`. The processor owns
    one git writer, so at most one operation (or per-issue sync) is in flight at a time.
    """

    def __init__(
        self,
        engine: SyncEngine,
        ledger: Optional[SyncLedger] = None,
        *,
        project_key: Optional[str] = None,
        max_parallel_tasks: int = 2,
        max_concurrent_operations: int = 2,
        max_observers: int = 16,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.ledger = ledger
        self.project_key = project_key or None
        self.max_parallel_tasks = max(1, max_parallel_tasks)
        self._now = clock
        self._operations: Dict[str, Operation] = {}
        self._handles: Dict[str, OperationHandle] = {}
        self._broadcaster = ProgressBroadcaster(max_observers=max_observers)
        self._lock = threading.RLock()
        self._closed = False
        self._issue_sync: Optional[str] = None
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_concurrent_operations),
            thread_name_prefix="jiracdc-operation",
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_operation(self, kind: Union[OperationKind, str], config: OperationConfig) -> Operation:
        """Validate, register and schedule an operation. Returns a pending snapshot."""
        try:
            kind = OperationKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown operation kind: {kind}")
        config.validate()
        self._check_target(config.project_key)
        tasks = build_task_graph(kind, config)
        validate_task_graph(tasks)

        with self._lock:
            self._check_idle_locked()

            operation = Operation(
                id=str(uuid.uuid4()),
                kind=kind,
                config=copy.deepcopy(config),
                start_time=self._now(),
                tasks=tasks,
                progress=Progress(total_steps=len(tasks), last_message="Queued"),
            )
            handle = OperationHandle()
            self._operations[operation.id] = operation
            self._handles[operation.id] = handle
            snapshot = copy.deepcopy(operation)
            handle.future = self._executor.submit(self._execute, operation.id)

        logger.info(
            f"Started {kind.value} operation {operation.id} for {config.project_key} "
            f"(triggered by {config.triggered_by})"
        )
        return snapshot

    def get_operation(self, operation_id: str) -> Operation:
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Operation {operation_id} not found")
            return copy.deepcopy(operation)

    def list_operations(self, status: Optional[Union[OperationStatus, str]] = None) -> List[Operation]:
        if status is not None:
            status = OperationStatus(status)
        with self._lock:
            operations = [
                copy.deepcopy(op)
                for op in self._operations.values()
                if status is None or op.status == status
            ]
        return sorted(operations, key=lambda op: op.start_time)

    def cancel_operation(self, operation_id: str) -> Operation:
        """Cancel a running operation. Running tasks stop at their next cancellation point."""
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Operation {operation_id} not found")
            if operation.status != OperationStatus.RUNNING:
                raise InvalidOperationStateError(
                    f"Operation {operation_id} is {operation.status.value}, not running"
                )
            self._handles[operation_id].cancel_event.set()
            operation.status = OperationStatus.CANCELLED
            operation.end_time = self._now()
            operation.progress.last_message = "Cancelled"
            snapshot = copy.deepcopy(operation)

        logger.info(f"Cancelled operation {operation_id}")
        self._broadcaster.publish(operation_id, copy.deepcopy(snapshot.progress))
        return snapshot

    def wait_for_completion(
        self,
        operation_id: str,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
        poll_interval: float = 0.05,
    ) -> Operation:
        """Block until the operation is terminal and its worker has stopped.

        Raises WaitTimeoutError, carrying the latest snapshot, when `timeout` elapses or
        `cancel_event` fires first.
        """
        deadline = time.monotonic() + timeout
        while True:
            snapshot = self.get_operation(operation_id)
            if snapshot.status in TERMINAL_STATUSES and self._settled(operation_id):
                return snapshot
            remaining = deadline - time.monotonic()
            if remaining <= 0 or (cancel_event is not None and cancel_event.is_set()):
                raise WaitTimeoutError(
                    f"Operation {operation_id} still {snapshot.status.value}",
                    operation=snapshot,
                )
            delay = min(poll_interval, remaining)
            if cancel_event is not None:
                cancel_event.wait(delay)
            else:
                time.sleep(delay)

    def _settled(self, operation_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(operation_id)
        return handle is None or handle.future is None or handle.future.done()

    def cleanup_old_operations(self, retention_days: float) -> int:
        """Evict finished operations that ended before the retention window."""
        if retention_days < 0:
            raise ValidationError("retention_days must not be negative")
        cutoff = self._now() - timedelta(days=retention_days)
        with self._lock:
            expired = [
                op_id
                for op_id, op in self._operations.items()
                if op.end_time is not None and op.end_time < cutoff
            ]
            for op_id in expired:
                del self._operations[op_id]
                self._handles.pop(op_id, None)
                self._broadcaster.close(op_id)
        if expired:
            logger.info(f"Removed {len(expired)} operations older than {retention_days} days")
        return len(expired)

    def subscribe(self, operation_id: str, callback: ProgressListener) -> Callable[[], None]:
        """Receive operation progress updates until the operation finishes."""
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Operation {operation_id} not found")
            if operation.status in TERMINAL_STATUSES:
                return lambda: None
            return self._broadcaster.subscribe(operation_id, callback)

    def sync_issue(self, issue_key: str, force_refresh: bool = False) -> SyncResult:
        """Synchronize one issue in the caller's thread, under the same single-flight rule."""
        if not ISSUE_KEY_PATTERN.match(issue_key or ""):
            raise ValidationError(f"Invalid issue key: {issue_key!r}")
        self._check_target(project_key_of(issue_key))

        with self._lock:
            self._check_idle_locked()
            self._issue_sync = issue_key
        try:
            self.engine.writer.init_repository()
            return self.engine.synchronize_issue(issue_key, force_refresh=force_refresh)
        finally:
            with self._lock:
                self._issue_sync = None

    def _check_target(self, project_key: str) -> None:
        if self.project_key is not None and project_key != self.project_key:
            raise ValidationError(
                f"Project {project_key} is not this processor's sync target ({self.project_key})"
            )

    def _check_idle_locked(self) -> None:
        """Raise unless nothing else holds the git write path."""
        if self._closed:
            raise InvalidOperationStateError("Operation processor is shut down")
        for op_id, existing in self._operations.items():
            handle = self._handles.get(op_id)
            # A cancelled operation keeps the write path until its worker has stopped.
            worker_busy = handle is not None and handle.future is not None and not handle.future.done()
            if existing.status in ACTIVE_STATUSES or worker_busy:
                raise OperationConflictError(
                    f"Operation {existing.id} ({existing.kind.value}) is still "
                    f"{existing.status.value} for {existing.config.project_key}",
                    active_operation_id=existing.id,
                )
        if self._issue_sync is not None:
            raise OperationConflictError(f"Issue {self._issue_sync} is being synchronized")

    def shutdown(self, wait: bool = True) -> None:
        """Cancel pending and running operations and stop the worker pool."""
        with self._lock:
            self._closed = True
            now = self._now()
            for op_id, operation in self._operations.items():
                if operation.status not in ACTIVE_STATUSES:
                    continue
                self._handles[op_id].cancel_event.set()
                was_pending = operation.status == OperationStatus.PENDING
                operation.status = OperationStatus.CANCELLED
                operation.end_time = now
                operation.progress.last_message = "Cancelled at shutdown"
                if was_pending:
                    # Its worker never starts, so nothing else finalizes it.
                    self._finalize_locked(operation)
                    self._broadcaster.close(op_id)
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Operation processor stopped")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, operation_id: str) -> None:
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None or operation.status != OperationStatus.PENDING:
                return
            handle = self._handles[operation_id]
            operation.status = OperationStatus.RUNNING
            operation.progress.last_message = "Running"
            context = OperationContext(
                operation_id,
                copy.deepcopy(operation.config),
                self.engine,
                handle.cancel_event,
                ledger=self.ledger,
                now=self._now,
            )
            kind = operation.kind

        logger.info(f"Running {kind.value} operation {operation_id}")
        try:
            self._run_graph(operation_id, context)
        except Exception as e:
            logger.exception(f"Operation {operation_id} crashed: {e}")
            with self._lock:
                operation = self._operations.get(operation_id)
                if operation is not None and operation.status == OperationStatus.RUNNING:
                    operation.status = OperationStatus.FAILED
                    operation.error_message = str(e)
                    operation.end_time = self._now()
        finally:
            self._finish(operation_id)

    def _run_graph(self, operation_id: str, context: OperationContext) -> None:
        running: Dict[Future, str] = {}
        with ThreadPoolExecutor(
            max_workers=self.max_parallel_tasks,
            thread_name_prefix=f"jiracdc-task-{operation_id[:8]}",
        ) as pool:
            while True:
                to_start: List[Task] = []
                with self._lock:
                    operation = self._operations[operation_id]
                    if operation.status == OperationStatus.RUNNING:
                        for task in blocked_tasks(operation.tasks):
                            task.status = OperationStatus.FAILED
                            task.error_message = "A dependency did not complete"
                            task.finished_at = self._now()
                        for task in runnable_tasks(operation.tasks):
                            task.status = OperationStatus.RUNNING
                            task.started_at = self._now()
                            to_start.append(copy.deepcopy(task))

                for task in to_start:
                    future = pool.submit(self._run_task, operation_id, task, context)
                    running[future] = task.id

                if not running:
                    return

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    task_id = running.pop(future)
                    payload, error = future.result()
                    self._task_finished(operation_id, task_id, payload, error)

    def _run_task(
        self, operation_id: str, task: Task, context: OperationContext
    ) -> Tuple[Any, Optional[BaseException]]:
        """Run one task; exceptions are returned, never raised."""
        handler = TASK_HANDLERS[task.kind]
        tracker = ProgressTracker(
            listener=lambda progress: self._set_task_progress(operation_id, task.id, progress)
        )
        try:
            if context.cancel_event.is_set():
                raise OperationCancelledError(f"{task.name} not started: operation cancelled")
            payload = handler(context, task, tracker)
        except OperationCancelledError as e:
            logger.info(f"Task {task.name} of operation {operation_id} cancelled")
            return None, e
        except Exception as e:
            logger.error(f"Task {task.name} of operation {operation_id} failed: {e}")
            return None, e
        context.set_result(task.kind, payload)
        return payload, None

    def _set_task_progress(self, operation_id: str, task_id: str, progress: Progress) -> None:
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is not None:
                operation.task(task_id).progress = progress

    def _task_finished(
        self,
        operation_id: str,
        task_id: str,
        payload: Any,
        error: Optional[BaseException],
    ) -> None:
        with self._lock:
            operation = self._operations[operation_id]
            task = operation.task(task_id)
            task.finished_at = self._now()

            if error is None:
                task.status = OperationStatus.COMPLETED
                task.result = TaskResult(status=OperationStatus.COMPLETED, payload=payload)
                if operation.status == OperationStatus.RUNNING:
                    operation.progress.completed_steps += 1
                    operation.progress.last_message = f"{task.name} completed"
                    # Completion shares the critical section with the last step.
                    if all(t.status == OperationStatus.COMPLETED for t in operation.tasks):
                        operation.status = OperationStatus.COMPLETED
                        operation.end_time = self._now()
                        operation.progress.last_message = "Completed"
            elif isinstance(error, OperationCancelledError):
                task.status = OperationStatus.CANCELLED
                task.error_message = str(error)
                task.result = TaskResult(status=OperationStatus.CANCELLED, error=str(error))
            else:
                task.status = OperationStatus.FAILED
                task.error_message = str(error)
                task.result = TaskResult(status=OperationStatus.FAILED, error=str(error))
                if operation.status == OperationStatus.RUNNING:
                    operation.progress.last_message = f"{task.name} failed: {error}"
                    if operation.error_message is None:
                        operation.error_message = f"{task.name}: {error}"
                    if is_connectivity_error(error):
                        logger.warning(
                            f"Aborting operation {operation_id} after connectivity failure in {task.name}"
                        )
                        for other in operation.tasks:
                            if other.status == OperationStatus.PENDING:
                                other.status = OperationStatus.FAILED
                                other.error_message = f"Aborted: {task.name} failed"
                                other.finished_at = self._now()

            progress = copy.deepcopy(operation.progress)

        self._broadcaster.publish(operation_id, progress)

    def _finish(self, operation_id: str) -> None:
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                return
            if operation.status == OperationStatus.RUNNING:
                # Nothing left to run but not every task completed.
                operation.status = OperationStatus.FAILED
                operation.end_time = self._now()
                if operation.error_message is None:
                    operation.error_message = "Not all tasks completed"
            self._finalize_locked(operation)
            self._broadcaster.close(operation_id)
            snapshot = copy.deepcopy(operation)

        logger.info(
            f"Operation {operation_id} finished: {snapshot.status.value} "
            f"({snapshot.progress.completed_steps}/{snapshot.progress.total_steps} tasks)"
        )
        if snapshot.status == OperationStatus.COMPLETED and snapshot.kind in LEDGER_KINDS:
            self._record_sync(snapshot)

    def _finalize_locked(self, operation: Operation) -> None:
        """Cancel leftover tasks and compute the result summary."""
        if operation.end_time is None:
            operation.end_time = self._now()
        for task in operation.tasks:
            if task.status in ACTIVE_STATUSES:
                task.status = OperationStatus.CANCELLED
                task.finished_at = task.finished_at or operation.end_time
        operation.result_summary = self._summarize(operation)

    @staticmethod
    def _summarize(operation: Operation) -> OperationResultSummary:
        counters = SyncCounters()
        for task in operation.tasks:
            payload = task.result.payload if task.result else None
            if payload is not None:
                counters = counters + payload.counters()
        end_time = operation.end_time or operation.start_time
        return OperationResultSummary(
            processed_issues=counters.processed_issues,
            created_files=counters.created_files,
            updated_files=counters.updated_files,
            deleted_files=counters.deleted_files,
            skipped_issues=counters.skipped_issues,
            failed_issues=counters.failed_issues,
            commits=counters.commits,
            elapsed_seconds=max(0.0, (end_time - operation.start_time).total_seconds()),
        )

    def _record_sync(self, operation: Operation) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.record_sync(
                operation.config.project_key,
                operation.start_time,
                operation_id=operation.id,
                operation_kind=operation.kind.value,
            )
        except Exception as e:
            logger.error(f"Operation {operation.id} completed but its sync time was not recorded: {e}")

"""Issue synchronization engine (Jira -> git)"""

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from jiracdc.errors import GitWriteError, OperationCancelledError
from jiracdc.services.converter import convert_issue, filter_active_issues
from jiracdc.services.git_writer import GitWriter
from jiracdc.services.jira_client import ISSUE_FIELDS, JiraClient, build_jql
from jiracdc.services.ledger import SyncLedger
from jiracdc.services.progress import ProgressTracker

logger = logging.getLogger(__name__)


class SyncOperationType(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncResultStatus(str, enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Per-issue outcome of a sync pass."""

    issue_key: str
    operation_type: SyncOperationType
    status: SyncResultStatus
    file_path: Optional[str] = None
    commit_hash: Optional[str] = None
    error: Optional[str] = None


def project_key_of(issue_key: str) -> str:
    return issue_key.rsplit("-", 1)[0]


class SyncEngine:
    """Fetches issues from Jira and writes them to the git target"""

    def __init__(
        self,
        client: JiraClient,
        writer: GitWriter,
        ledger: Optional[SyncLedger] = None,
        *,
        search_limit: int = 1000,
    ):
        self.client = client
        self.writer = writer
        self.ledger = ledger
        self.search_limit = search_limit

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _push(self) -> None:
        try:
            self.writer.push_changes()
        except GitWriteError as e:
            logger.error(f"Failed to push changes: {e}")
            raise

    def _cancelled(self, results: List[SyncResult], unpushed: bool) -> None:
        """Push whatever is committed, then raise OperationCancelledError."""
        if unpushed:
            try:
                self.writer.push_changes()
            except GitWriteError as e:
                logger.error(f"Failed to push committed changes after cancellation: {e}")
        logger.info(f"Sync cancelled after {len(results)} issues")
        raise OperationCancelledError(f"Sync cancelled after {len(results)} issues")

    @staticmethod
    def _is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _is_unchanged(self, project_key: str, key: str, updated: Optional[datetime]) -> bool:
        if self.ledger is None or updated is None:
            return False
        return self.ledger.get_issue_updated(project_key, key) == updated

    def _write_issue(self, record: Dict[str, Any], force_refresh: bool) -> SyncResult:
        """Convert and write one issue.

        Per-item failures are captured in the result; GitWriteError propagates and aborts
        the batch.
        """
        data = convert_issue(record)
        if not data.key:
            return SyncResult(
                issue_key="",
                operation_type=SyncOperationType.UPDATE,
                status=SyncResultStatus.FAILED,
                error="Issue record has no key",
            )

        project_key = project_key_of(data.key)
        try:
            if not force_refresh and self._is_unchanged(project_key, data.key, data.updated):
                return SyncResult(
                    issue_key=data.key,
                    operation_type=SyncOperationType.UPDATE,
                    status=SyncResultStatus.SKIPPED,
                )

            written = self.writer.create_or_update_issue_file(data)
            if self.ledger is not None:
                self.ledger.record_issue(
                    project_key,
                    data.key,
                    data.updated,
                    file_path=written.path,
                    commit_hash=written.commit_hash,
                )
        except GitWriteError as e:
            logger.error(f"Aborting batch: git write of {data.key} failed: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to sync issue {data.key}: {e}")
            return SyncResult(
                issue_key=data.key,
                operation_type=SyncOperationType.UPDATE,
                status=SyncResultStatus.FAILED,
                error=str(e),
            )

        return SyncResult(
            issue_key=data.key,
            operation_type=SyncOperationType.CREATE if written.created else SyncOperationType.UPDATE,
            status=SyncResultStatus.COMPLETED if written.changed else SyncResultStatus.SKIPPED,
            file_path=written.path,
            commit_hash=written.commit_hash,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def synchronize_issue(
        self,
        issue_key: str,
        force_refresh: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Fetch, convert, write and push a single issue"""
        record = self.client.get_issue(issue_key, fields=ISSUE_FIELDS, cancel_event=cancel_event)
        result = self._write_issue(record, force_refresh)
        if result.status == SyncResultStatus.COMPLETED:
            self._push()
        logger.info(f"Synchronized {issue_key}: {result.status.value}")
        return result

    def synchronize_project(
        self,
        project_key: str,
        force_refresh: bool = False,
        active_only: bool = False,
        updated_since: Optional[datetime] = None,
        issue_filter: Optional[str] = None,
        progress: Optional[ProgressTracker] = None,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> List[SyncResult]:
        """Run one project search and write every matching issue, pushing once"""
        jql = build_jql(
            project_key,
            active_only=active_only,
            updated_since=updated_since,
            issue_filter=issue_filter,
            now=now,
        )
        page = self.client.search_issues(
            jql,
            start_at=0,
            max_results=self.search_limit,
            fields=ISSUE_FIELDS,
            cancel_event=cancel_event,
        )
        if page.total_count > len(page.items):
            logger.warning(
                f"Search for {project_key} matched {page.total_count} issues; "
                f"only the first {len(page.items)} are synced in this pass"
            )

        records = filter_active_issues(page.items) if active_only else page.items
        if progress is not None:
            progress.set_total(len(records), f"Syncing {len(records)} issues from {project_key}")

        results: List[SyncResult] = []
        for record in records:
            if self._is_cancelled(cancel_event):
                self._cancelled(results, unpushed=bool(results))
            result = self._write_issue(record, force_refresh)
            results.append(result)
            if progress is not None:
                progress.advance(1, f"{result.issue_key}: {result.status.value}")

        self._push()
        logger.info(f"Synchronized {len(results)} issues for {project_key}")
        return results

    def bootstrap(
        self,
        project_key: str,
        progress: Optional[ProgressTracker] = None,
        cancel_event: Optional[threading.Event] = None,
        page_size: int = 50,
        active_only: bool = False,
        force_refresh: bool = False,
        issue_filter: Optional[str] = None,
    ) -> List[SyncResult]:
        """Full paginated scan of a project, pushing once per page"""
        jql = build_jql(project_key, active_only=active_only, issue_filter=issue_filter)
        results: List[SyncResult] = []
        seen: Set[str] = set()
        start_at = 0
        unpushed = False

        while True:
            if self._is_cancelled(cancel_event):
                self._cancelled(results, unpushed)
            try:
                page = self.client.search_issues(
                    jql,
                    start_at=start_at,
                    max_results=page_size,
                    fields=ISSUE_FIELDS,
                    cancel_event=cancel_event,
                )
            except OperationCancelledError:
                self._cancelled(results, unpushed)

            if progress is not None:
                progress.set_total(max(page.total_count, len(seen)))

            for record in page.items:
                if self._is_cancelled(cancel_event):
                    self._cancelled(results, unpushed)
                key = record.get("key") if isinstance(record, dict) else None
                if key in seen:
                    continue
                if key:
                    seen.add(key)
                result = self._write_issue(record, force_refresh)
                results.append(result)
                unpushed = unpushed or result.status == SyncResultStatus.COMPLETED
                if progress is not None:
                    progress.advance(1, f"{result.issue_key}: {result.status.value}")

            if page.items:
                self._push()
                unpushed = False
                logger.info(
                    f"Bootstrap {project_key}: page at {start_at} done "
                    f"({len(results)}/{page.total_count} issues)"
                )

            start_at += len(page.items)
            if not page.items or start_at >= page.total_count:
                break

        if progress is not None:
            progress.set_total(len(results), f"Bootstrapped {len(results)} issues")
        return results

    def collect_source_keys(
        self,
        project_key: str,
        active_only: bool = False,
        cancel_event: Optional[threading.Event] = None,
        page_size: int = 100,
    ) -> Set[str]:
        """All issue keys Jira currently reports for the project"""
        jql = build_jql(project_key, active_only=active_only)
        keys: Set[str] = set()
        start_at = 0
        while True:
            page = self.client.search_issues(
                jql,
                start_at=start_at,
                max_results=page_size,
                fields=["status"],
                cancel_event=cancel_event,
            )
            keys.update(record["key"] for record in page.items if record.get("key"))
            start_at += len(page.items)
            if not page.items or start_at >= page.total_count:
                return keys

    def remove_issues(
        self,
        keys: Iterable[str],
        progress: Optional[ProgressTracker] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[SyncResult]:
        """Delete the files of the given issues, one commit each, one push"""
        ordered = sorted(set(keys))
        if progress is not None:
            progress.set_total(len(ordered), f"Removing {len(ordered)} issue files")

        results: List[SyncResult] = []
        for key in ordered:
            if self._is_cancelled(cancel_event):
                self._cancelled(results, unpushed=bool(results))
            try:
                removed = self.writer.delete_issue_file(key)
                if self.ledger is not None:
                    self.ledger.forget_issue(project_key_of(key), key)
                result = SyncResult(
                    issue_key=key,
                    operation_type=SyncOperationType.DELETE,
                    status=SyncResultStatus.COMPLETED if removed.changed else SyncResultStatus.SKIPPED,
                    file_path=removed.path,
                    commit_hash=removed.commit_hash,
                )
            except GitWriteError:
                raise
            except Exception as e:
                logger.error(f"Failed to remove issue file for {key}: {e}")
                result = SyncResult(
                    issue_key=key,
                    operation_type=SyncOperationType.DELETE,
                    status=SyncResultStatus.FAILED,
                    error=str(e),
                )
            results.append(result)
            if progress is not None:
                progress.advance(1, f"{key}: {result.status.value}")

        if ordered:
            self._push()
        return results

"""Sync ledger: persisted per-project and per-issue sync state"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from jiracdc.models import SyncedIssue, SyncState
from jiracdc.models.synced_issue import utcnow

logger = logging.getLogger(__name__)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SyncLedger:
    """Reads and writes the sync_states and synced_issues tables.

    Each call opens its own short-lived session, so one ledger can be shared by the
    worker threads of several operations.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        if session_factory is None:
            from jiracdc.models.base import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def get_last_sync(self, project_key: str) -> Optional[datetime]:
        db = self.session_factory()
        try:
            state = db.query(SyncState).filter(SyncState.project_key == project_key).first()
            return _to_aware_utc(state.last_sync_at) if state else None
        finally:
            db.close()

    def record_sync(
        self,
        project_key: str,
        synced_at: datetime,
        operation_id: Optional[str] = None,
        operation_kind: Optional[str] = None,
    ) -> None:
        db = self.session_factory()
        try:
            state = db.query(SyncState).filter(SyncState.project_key == project_key).first()
            if state is None:
                state = SyncState(project_key=project_key)
                db.add(state)
            state.last_sync_at = _to_naive_utc(synced_at)
            state.last_operation_id = operation_id
            state.last_operation_kind = operation_kind
            db.commit()
            logger.info(f"Recorded last sync of {project_key} at {synced_at.isoformat()}")
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record sync state for {project_key}: {e}")
            raise
        finally:
            db.close()

    def get_issue_updated(self, project_key: str, issue_key: str) -> Optional[datetime]:
        """Jira `updated` timestamp of the issue as of its last write, if any."""
        db = self.session_factory()
        try:
            row = (
                db.query(SyncedIssue)
                .filter(SyncedIssue.project_key == project_key, SyncedIssue.issue_key == issue_key)
                .first()
            )
            return _to_aware_utc(row.source_updated_at) if row else None
        finally:
            db.close()

    def list_issues(self, project_key: Optional[str] = None) -> List[SyncedIssue]:
        """Issues written so far, ordered by key."""
        db = self.session_factory()
        try:
            query = db.query(SyncedIssue)
            if project_key:
                query = query.filter(SyncedIssue.project_key == project_key)
            return query.order_by(SyncedIssue.project_key, SyncedIssue.issue_key).all()
        finally:
            db.close()

    def get_synced_issue(self, project_key: str, issue_key: str) -> Optional[SyncedIssue]:
        db = self.session_factory()
        try:
            return (
                db.query(SyncedIssue)
                .filter(SyncedIssue.project_key == project_key, SyncedIssue.issue_key == issue_key)
                .first()
            )
        finally:
            db.close()

    def record_issue(
        self,
        project_key: str,
        issue_key: str,
        source_updated_at: Optional[datetime],
        file_path: Optional[str] = None,
        commit_hash: Optional[str] = None,
    ) -> None:
        db = self.session_factory()
        try:
            row = (
                db.query(SyncedIssue)
                .filter(SyncedIssue.project_key == project_key, SyncedIssue.issue_key == issue_key)
                .first()
            )
            if row is None:
                row = SyncedIssue(project_key=project_key, issue_key=issue_key)
                db.add(row)
            row.source_updated_at = _to_naive_utc(source_updated_at) if source_updated_at else None
            row.file_path = file_path
            if commit_hash:
                row.commit_hash = commit_hash
            row.last_synced_at = utcnow()
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record synced issue {issue_key}: {e}")
            raise
        finally:
            db.close()

    def forget_issue(self, project_key: str, issue_key: str) -> None:
        db = self.session_factory()
        try:
            db.query(SyncedIssue).filter(
                SyncedIssue.project_key == project_key, SyncedIssue.issue_key == issue_key
            ).delete()
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to remove synced issue {issue_key}: {e}")
            raise
        finally:
            db.close()

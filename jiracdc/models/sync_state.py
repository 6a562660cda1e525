"""Per-project sync state model"""
from sqlalchemy import Column, Integer, String, DateTime
from jiracdc.models.base import Base
from jiracdc.models.synced_issue import utcnow


class SyncState(Base):
    """Last successful sync of a Jira project"""

    __tablename__ = "sync_states"

    id = Column(Integer, primary_key=True, index=True)
    project_key = Column(String, nullable=False, unique=True, index=True)

    # Start time of the last successful bootstrap, forced sync or reconcile.
    # Reconcile uses it as its `updated >=` cutoff.
    last_sync_at = Column(DateTime, nullable=True)
    last_operation_id = Column(String, nullable=True)
    last_operation_kind = Column(String, nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncState(project_key={self.project_key}, last_sync_at={self.last_sync_at})>"

"""Synced issue model"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from datetime import datetime, timezone
from jiracdc.models.base import Base


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (ledger timestamps are stored naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncedIssue(Base):
    """Last written state of one Jira issue in the git repository"""

    __tablename__ = "synced_issues"
    __table_args__ = (
        UniqueConstraint("project_key", "issue_key", name="uq_synced_issues_project_issue"),
    )

    id = Column(Integer, primary_key=True, index=True)

    project_key = Column(String, nullable=False, index=True)
    issue_key = Column(String, nullable=False)

    # Jira's `updated` timestamp as of the last write
    source_updated_at = Column(DateTime, nullable=True)

    # Target file
    file_path = Column(String, nullable=True)
    commit_hash = Column(String, nullable=True)

    last_synced_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<SyncedIssue(issue_key={self.issue_key}, commit={self.commit_hash})>"

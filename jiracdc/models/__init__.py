"""Database models"""

from jiracdc.models.base import Base
from jiracdc.models.sync_state import SyncState
from jiracdc.models.synced_issue import SyncedIssue

__all__ = [
    "Base",
    "SyncState",
    "SyncedIssue",
]

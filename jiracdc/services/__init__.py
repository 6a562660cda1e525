"""Services"""

from jiracdc.services.jira_client import JiraClient
from jiracdc.services.operations import OperationProcessor
from jiracdc.services.sync_engine import SyncEngine

__all__ = ["JiraClient", "SyncEngine", "OperationProcessor"]

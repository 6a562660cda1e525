"""Operation and task data types"""

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from jiracdc.errors import ValidationError
from jiracdc.services.progress import Progress

PROJECT_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")
MAX_PAGE_SIZE = 1000


class OperationKind(str, enum.Enum):
    BOOTSTRAP = "bootstrap"
    RECONCILE = "reconcile"
    FORCED_SYNC = "forced_sync"
    CLEANUP = "cleanup"


class OperationStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({OperationStatus.PENDING, OperationStatus.RUNNING})


class TaskKind(str, enum.Enum):
    INIT_REPO = "InitRepo"
    FETCH_PROJECT_INFO = "FetchProjectInfo"
    BOOTSTRAP_SYNC = "BootstrapSync"
    CHECK_SOURCE_UPDATES = "CheckSourceUpdates"
    UPDATE_REPO = "UpdateRepo"
    SYNC_UPDATED_ISSUES = "SyncUpdatedIssues"
    IDENTIFY_ORPHANS = "IdentifyOrphans"
    REMOVE_ORPHANS = "RemoveOrphans"


@dataclass
class OperationConfig:
    project_key: str
    active_only: bool = False
    force_refresh: bool = False
    page_size: int = 50
    issue_filter: Optional[str] = None
    updated_since: Optional[datetime] = None
    triggered_by: str = "api"

    def validate(self) -> None:
        if not self.project_key:
            raise ValidationError("project_key is required")
        if not PROJECT_KEY_PATTERN.match(self.project_key):
            raise ValidationError(f"Invalid project key: {self.project_key!r}")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        if self.issue_filter is not None and not self.issue_filter.strip():
            raise ValidationError("issue_filter must not be blank")


@dataclass
class TaskResult:
    status: OperationStatus
    payload: Any = None
    error: Optional[str] = None


@dataclass
class Task:
    id: str
    name: str
    kind: TaskKind
    description: str = ""
    status: OperationStatus = OperationStatus.PENDING
    priority: int = 0
    dependencies: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)
    progress: Optional[Progress] = None
    result: Optional[TaskResult] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class OperationResultSummary:
    processed_issues: int = 0
    created_files: int = 0
    updated_files: int = 0
    deleted_files: int = 0
    skipped_issues: int = 0
    failed_issues: int = 0
    commits: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class Operation:
    id: str
    kind: OperationKind
    config: OperationConfig
    start_time: datetime
    status: OperationStatus = OperationStatus.PENDING
    tasks: List[Task] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    result_summary: Optional[OperationResultSummary] = None

    def task(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)

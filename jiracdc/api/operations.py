"""Operation management endpoints"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import List, Optional
from pydantic import BaseModel, computed_field
from datetime import datetime

from jiracdc.config import settings
from jiracdc.errors import (
    InvalidOperationStateError,
    OperationConflictError,
    OperationNotFoundError,
    ValidationError,
)
from jiracdc.security import require_api_token
from jiracdc.services.operation_types import OperationConfig, OperationKind, OperationStatus
from jiracdc.services.operations import OperationProcessor
from jiracdc.services.progress import Progress

router = APIRouter(
    prefix="/api/operations",
    tags=["operations"],
    dependencies=[Depends(require_api_token)],
)


def get_processor(request: Request) -> OperationProcessor:
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        raise HTTPException(status_code=503, detail="Operation processor not running")
    return processor


class OperationCreate(BaseModel):
    kind: OperationKind
    project_key: Optional[str] = None
    active_only: Optional[bool] = None
    force_refresh: bool = False
    page_size: Optional[int] = None
    issue_filter: Optional[str] = None


class ProgressResponse(BaseModel):
    total_steps: int
    completed_steps: int
    last_message: str = ""

    @computed_field
    @property
    def percent(self) -> float:
        return Progress(self.total_steps, self.completed_steps).percent

    class Config:
        from_attributes = True


class TaskResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    status: OperationStatus
    priority: int = 0
    dependencies: List[str] = []
    progress: Optional[ProgressResponse] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class OperationConfigResponse(BaseModel):
    project_key: str
    active_only: bool
    force_refresh: bool
    page_size: int
    issue_filter: Optional[str] = None
    updated_since: Optional[datetime] = None
    triggered_by: str

    class Config:
        from_attributes = True


class ResultSummaryResponse(BaseModel):
    processed_issues: int
    created_files: int
    updated_files: int
    deleted_files: int
    skipped_issues: int
    failed_issues: int
    commits: int
    elapsed_seconds: float

    class Config:
        from_attributes = True


class OperationResponse(BaseModel):
    id: str
    kind: OperationKind
    status: OperationStatus
    config: OperationConfigResponse
    tasks: List[TaskResponse]
    progress: ProgressResponse
    start_time: datetime
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    result_summary: Optional[ResultSummaryResponse] = None

    class Config:
        from_attributes = True


class CleanupResponse(BaseModel):
    removed: int


@router.post("/", response_model=OperationResponse, status_code=202)
def start_operation(body: OperationCreate, processor: OperationProcessor = Depends(get_processor)):
    """Start an operation; it runs in the background"""
    config = OperationConfig(
        project_key=body.project_key or settings.jira_project_key,
        active_only=settings.active_issues_only if body.active_only is None else body.active_only,
        force_refresh=body.force_refresh,
        page_size=body.page_size or settings.bootstrap_page_size,
        issue_filter=body.issue_filter,
        triggered_by="api",
    )
    try:
        return processor.start_operation(body.kind, config)
    except OperationConflictError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "active_operation_id": e.active_operation_id},
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InvalidOperationStateError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/", response_model=List[OperationResponse])
def list_operations(
    status: Optional[OperationStatus] = None,
    processor: OperationProcessor = Depends(get_processor),
):
    """List operations, optionally filtered by status"""
    return processor.list_operations(status)


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_operations(
    retention_days: Optional[float] = Query(default=None, ge=0),
    processor: OperationProcessor = Depends(get_processor),
):
    """Evict finished operations older than the retention window"""
    days = settings.operation_retention_days if retention_days is None else retention_days
    return CleanupResponse(removed=processor.cleanup_old_operations(days))


@router.get("/{operation_id}", response_model=OperationResponse)
def get_operation(operation_id: str, processor: OperationProcessor = Depends(get_processor)):
    """Get a specific operation"""
    try:
        return processor.get_operation(operation_id)
    except OperationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{operation_id}/cancel", response_model=OperationResponse)
def cancel_operation(operation_id: str, processor: OperationProcessor = Depends(get_processor)):
    """Cancel a running operation"""
    try:
        return processor.cancel_operation(operation_id)
    except OperationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidOperationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

"""Synced issue endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from jiracdc.api.operations import get_processor
from jiracdc.config import settings
from jiracdc.errors import (
    InvalidOperationStateError,
    NotFoundError,
    OperationConflictError,
    SyncError,
    ValidationError,
)
from jiracdc.security import require_api_token
from jiracdc.services.ledger import SyncLedger
from jiracdc.services.operations import OperationProcessor
from jiracdc.services.sync_engine import SyncOperationType, SyncResultStatus, project_key_of

router = APIRouter(
    prefix="/api/issues",
    tags=["issues"],
    dependencies=[Depends(require_api_token)],
)


def get_ledger(processor: OperationProcessor = Depends(get_processor)) -> SyncLedger:
    if processor.ledger is None:
        raise HTTPException(status_code=503, detail="Sync ledger not configured")
    return processor.ledger


class SyncedIssueResponse(BaseModel):
    project_key: str
    issue_key: str
    source_updated_at: Optional[datetime] = None
    file_path: Optional[str] = None
    commit_hash: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncResultResponse(BaseModel):
    issue_key: str
    operation_type: SyncOperationType
    status: SyncResultStatus
    file_path: Optional[str] = None
    commit_hash: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


@router.get("/", response_model=List[SyncedIssueResponse])
def list_issues(project_key: Optional[str] = None, ledger: SyncLedger = Depends(get_ledger)):
    """List issues written to the repository"""
    return ledger.list_issues(project_key or settings.jira_project_key or None)


@router.get("/{issue_key}", response_model=SyncedIssueResponse)
def get_issue(issue_key: str, ledger: SyncLedger = Depends(get_ledger)):
    """Get the last written state of one issue"""
    issue = ledger.get_synced_issue(project_key_of(issue_key), issue_key)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue {issue_key} has not been synced")
    return issue


@router.post("/{issue_key}/sync", response_model=SyncResultResponse)
def sync_issue(
    issue_key: str,
    force_refresh: bool = False,
    processor: OperationProcessor = Depends(get_processor),
):
    """Fetch one issue from Jira and write it now"""
    try:
        return processor.sync_issue(issue_key, force_refresh=force_refresh)
    except OperationConflictError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "active_operation_id": e.active_operation_id},
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InvalidOperationStateError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Issue {issue_key} not found in Jira")
    except SyncError as e:
        raise HTTPException(status_code=502, detail=str(e))

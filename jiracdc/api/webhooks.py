"""Jira webhook endpoint: requests an early poll"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request

from jiracdc.config import settings
from jiracdc.security import webhook_token_valid
from jiracdc.services.sync_engine import project_key_of

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _issue_key(payload: Dict[str, Any]) -> Optional[str]:
    issue = payload.get("issue")
    if not isinstance(issue, dict):
        return None
    key = issue.get("key")
    return key if isinstance(key, str) and key else None


@router.post("/jira")
def jira_webhook(
    request: Request,
    payload: Any = Body(default=None),
    token: Optional[str] = Query(default=None),
):
    """Validate a Jira issue event and bring the next reconcile forward"""
    if not webhook_token_valid(token):
        raise HTTPException(status_code=401, detail="Invalid webhook token")

    if not isinstance(payload, dict) or not payload.get("webhookEvent"):
        raise HTTPException(status_code=400, detail="Missing webhookEvent")
    issue_key = _issue_key(payload)
    if issue_key is None:
        raise HTTPException(status_code=400, detail="Missing issue.key")

    if settings.jira_project_key and project_key_of(issue_key) != settings.jira_project_key:
        logger.debug(f"Ignoring webhook for {issue_key}: not in {settings.jira_project_key}")
        return {"queued": False}

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"queued": False}

    queued = scheduler.trigger_now(triggered_by="webhook")
    logger.info(f"Webhook {payload['webhookEvent']} for {issue_key}: early poll queued={queued}")
    return {"queued": queued}

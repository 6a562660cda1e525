"""Jira REST API client wrapper"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from jiracdc.errors import (
    AuthenticationError,
    NotFoundError,
    OperationCancelledError,
    SourceAPIError,
    SourceUnavailableError,
    TransientAPIError,
)
from jiracdc.services.credentials import CredentialsProvider
from jiracdc.services.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

API_PREFIX = "/rest/api/2"

ISSUE_FIELDS = [
    "summary",
    "description",
    "status",
    "issuetype",
    "assignee",
    "reporter",
    "priority",
    "labels",
    "components",
    "fixVersions",
    "parent",
    "created",
    "updated",
]

# Status names are matched case-sensitively, exactly as Jira reports them.
INACTIVE_STATUSES = ("Done", "Closed", "Resolved")


@dataclass
class SearchPage:
    """One page of a JQL search."""

    items: List[Dict[str, Any]]
    total_count: int
    page_offset: int
    page_size: int


def minutes_since(since: datetime, now: Optional[datetime] = None) -> int:
    """Whole minutes from `since` to `now`, rounded up so the window never shrinks."""
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(1, math.ceil((now - since).total_seconds() / 60))


def build_jql(
    project_key: str,
    *,
    active_only: bool = False,
    updated_since: Optional[datetime] = None,
    issue_filter: Optional[str] = None,
    order_by: Optional[str] = "key ASC",
    now: Optional[datetime] = None,
) -> str:
    """Compose the project query used by every scan.

    `updated_since` becomes a relative offset: Jira reads absolute JQL dates in the
    search user's timezone, relative ones are timezone-free.
    """
    clauses = [f"project = {project_key}"]
    if active_only:
        clauses.extend(f"status != {status}" for status in INACTIVE_STATUSES)
    if updated_since is not None:
        clauses.append(f'updated >= "-{minutes_since(updated_since, now)}m"')
    if issue_filter:
        clauses.append(f"({issue_filter})")
    jql = " AND ".join(clauses)
    if order_by:
        jql += f" ORDER BY {order_by}"
    return jql


class JiraClient:
    """Rate-limited, authenticated access to the Jira REST API"""

    def __init__(
        self,
        base_url: str,
        credentials_provider: CredentialsProvider,
        *,
        rate_limiter: Optional[TokenBucket] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay_s: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client; credentials are resolved here and a failure is fatal."""
        self.base_url = base_url.rstrip("/")
        self.credentials_provider = credentials_provider
        self.credentials = credentials_provider.resolve()
        self.rate_limiter = rate_limiter or TokenBucket()
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay_s = base_delay_s
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_retry_after(response: requests.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            return None

    def _handle_response(self, response: requests.Response, path: str) -> Any:
        if 200 <= response.status_code < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise SourceAPIError(
                    f"Invalid JSON from Jira for {path}",
                    status_code=response.status_code,
                    body=response.text[:500],
                    cause=e,
                )

        status = response.status_code
        body = response.text[:500] if response.text else ""
        message = f"Jira API error: status {status}, body: {body}"

        if status == 401:
            raise AuthenticationError(message, status_code=status, body=body)
        if status == 404:
            raise NotFoundError(message, status_code=status, body=body)
        if status == 429 or status >= 500:
            raise TransientAPIError(
                message,
                status_code=status,
                body=body,
                retry_after=self._parse_retry_after(response),
            )
        raise SourceAPIError(message, status_code=status, body=body)

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]]) -> Any:
        url = f"{self.base_url}{API_PREFIX}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                auth=(self.credentials.username, self.credentials.token),
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            # ConnectTimeout lands here too: the host was never reached.
            raise SourceUnavailableError(f"Connection to {self.base_url} failed: {e}", cause=e)
        except requests.exceptions.Timeout as e:
            raise TransientAPIError(f"Request to {path} timed out: {e}", cause=e)
        return self._handle_response(response, path)

    def _reload_credentials(self) -> bool:
        """Re-resolve credentials after a 401. Returns True if they changed."""
        fresh = self.credentials_provider.resolve()
        if fresh == self.credentials:
            return False
        logger.info("Jira credentials changed in secret store; retrying with new credentials")
        self.credentials = fresh
        return True

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Rate-limited request with bounded retry on transient failures."""
        attempt = 1
        reloaded = False
        while True:
            self.rate_limiter.acquire(cancel_event)
            try:
                return self._send(method, path, params)
            except AuthenticationError:
                if reloaded or not self._reload_credentials():
                    raise
                reloaded = True
            except TransientAPIError as e:
                if attempt >= self.max_retries:
                    raise
                delay = e.retry_after
                if delay is None:
                    delay = self.base_delay_s * (2 ** (attempt - 1))
                logger.warning(
                    f"Transient Jira failure on {path} (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise OperationCancelledError(f"Request to {path} cancelled during backoff")
                else:
                    time.sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    def authenticate(self, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Verify credentials by fetching the current user."""
        user = self.get_current_user(cancel_event=cancel_event)
        logger.info(f"Authenticated to Jira as {user.get('name') or user.get('displayName')}")
        return user

    def get_current_user(self, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Get the authenticated user"""
        return self._request("GET", "myself", cancel_event=cancel_event)

    def get_project(self, project_key: str, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Get project by key"""
        try:
            return self._request("GET", f"project/{project_key}", cancel_event=cancel_event)
        except SourceAPIError as e:
            logger.error(f"Failed to get project {project_key}: {e}")
            raise

    def search_issues(
        self,
        jql: str,
        start_at: int = 0,
        max_results: int = 50,
        fields: Optional[List[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SearchPage:
        """Run one page of a JQL search"""
        params: Dict[str, Any] = {
            "jql": jql,
            "startAt": start_at,
            "maxResults": max_results,
        }
        if fields:
            params["fields"] = ",".join(fields)
        try:
            data = self._request("GET", "search", params=params, cancel_event=cancel_event)
        except SourceAPIError as e:
            logger.error(f"Failed to search issues ({jql}): {e}")
            raise
        return SearchPage(
            items=list(data.get("issues") or []),
            total_count=int(data.get("total") or 0),
            page_offset=int(data.get("startAt", start_at)),
            page_size=int(data.get("maxResults", max_results)),
        )

    def get_issue(
        self,
        issue_key: str,
        fields: Optional[List[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Get a specific issue by key"""
        params = {"fields": ",".join(fields)} if fields else None
        try:
            return self._request("GET", f"issue/{issue_key}", params=params, cancel_event=cancel_event)
        except SourceAPIError as e:
            logger.error(f"Failed to get issue {issue_key}: {e}")
            raise

    def get_project_issues(
        self,
        project_key: str,
        start_at: int = 0,
        max_results: int = 50,
        active_only: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> SearchPage:
        """Get one page of a project's issues"""
        jql = build_jql(project_key, active_only=active_only)
        return self.search_issues(
            jql,
            start_at=start_at,
            max_results=max_results,
            fields=ISSUE_FIELDS,
            cancel_event=cancel_event,
        )


def client_from_settings(settings) -> JiraClient:
    """Build a JiraClient from Settings."""
    from jiracdc.services.credentials import provider_from_settings

    return JiraClient(
        settings.jira_base_url,
        provider_from_settings(settings),
        rate_limiter=TokenBucket(settings.jira_requests_per_second, settings.jira_burst),
        timeout=settings.jira_timeout_seconds,
        max_retries=settings.jira_max_retries,
    )

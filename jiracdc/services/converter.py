"""Conversion of Jira issue JSON into the canonical IssueData record"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from jiracdc.services.jira_client import INACTIVE_STATUSES

# Jira REST v2 timestamps, e.g. 2024-01-02T15:04:05.000+0000
JIRA_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"


@dataclass
class IssueData:
    """Canonical, file-ready view of one Jira issue."""

    key: str
    summary: str = ""
    description: str = ""
    status: str = ""
    issue_type: str = ""
    priority: str = ""
    assignee: Optional[str] = None
    reporter: Optional[str] = None
    labels: List[str] = field(default_factory=list)
    components: List[str] = field(default_factory=list)
    fix_versions: List[str] = field(default_factory=list)
    parent_key: Optional[str] = None
    created: Optional[datetime] = None
    updated: Optional[datetime] = None


def parse_jira_datetime(value: Any) -> Optional[datetime]:
    """Parse a Jira timestamp into an aware datetime; None when absent or malformed."""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, JIRA_TIME_FORMAT)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _name(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return ""


def _person(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    name = value.get("displayName") or value.get("name")
    return str(name) if name else None


def _names(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    out = []
    for value in values:
        name = _name(value) if isinstance(value, dict) else str(value or "")
        if name:
            out.append(name)
    return out


def _adf_text(node: Any) -> str:
    """Flatten an Atlassian document format node to plain text."""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(_adf_text(child) for child in node)
    if not isinstance(node, dict):
        return ""
    if node.get("type") == "text":
        return str(node.get("text") or "")
    if node.get("type") == "hardBreak":
        return "\n"
    text = _adf_text(node.get("content") or [])
    if node.get("type") in ("paragraph", "heading", "listItem", "codeBlock", "blockquote"):
        text += "\n"
    return text


def _description(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return _adf_text(value).strip("\n")


def convert_issue(record: Dict[str, Any]) -> IssueData:
    """Map a Jira issue record onto IssueData. Never raises on missing fields."""
    record = record if isinstance(record, dict) else {}
    fields = record.get("fields")
    if not isinstance(fields, dict):
        fields = {}

    labels = fields.get("labels")
    parent = fields.get("parent")

    return IssueData(
        key=str(record.get("key") or ""),
        summary=str(fields.get("summary") or ""),
        description=_description(fields.get("description")),
        status=_name(fields.get("status")),
        issue_type=_name(fields.get("issuetype")),
        priority=_name(fields.get("priority")),
        assignee=_person(fields.get("assignee")),
        reporter=_person(fields.get("reporter")),
        labels=[str(label) for label in labels if label] if isinstance(labels, list) else [],
        components=_names(fields.get("components")),
        fix_versions=_names(fields.get("fixVersions")),
        parent_key=(parent.get("key") or None) if isinstance(parent, dict) else None,
        created=parse_jira_datetime(fields.get("created")),
        updated=parse_jira_datetime(fields.get("updated")),
    )


def issue_status(record: Dict[str, Any]) -> str:
    fields = record.get("fields") if isinstance(record, dict) else None
    if not isinstance(fields, dict):
        return ""
    return _name(fields.get("status"))


def filter_active_issues(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop Done/Closed/Resolved issues, keeping the order of the rest."""
    return [record for record in records if issue_status(record) not in INACTIVE_STATUSES]

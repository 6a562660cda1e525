import logging
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient


def _operation(status="running", **kwargs):
    from jiracdc.services.operation_types import (
        Operation,
        OperationConfig,
        OperationKind,
        OperationStatus,
    )

    return Operation(
        id=kwargs.pop("id", "op-1"),
        kind=OperationKind.BOOTSTRAP,
        config=OperationConfig(project_key="PROJ"),
        start_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        status=OperationStatus(status),
        **kwargs,
    )


class _ApiTestCase(unittest.TestCase):
    def setUp(self):
        from jiracdc.api import issues, operations, webhooks
        from jiracdc.config import settings

        logging.disable(logging.CRITICAL)
        self.settings = settings
        self.app = FastAPI()
        self.app.include_router(operations.router)
        self.app.include_router(issues.router)
        self.app.include_router(webhooks.router)
        self.processor = Mock()
        self.scheduler = Mock()
        self.scheduler.trigger_now.return_value = True
        self.app.state.processor = self.processor
        self.app.state.scheduler = self.scheduler
        self.client = TestClient(self.app)

        self._patches = [
            patch.object(settings, "api_token", None),
            patch.object(settings, "webhook_token", None),
            patch.object(settings, "jira_project_key", "PROJ"),
        ]
        for p in self._patches:
            p.start()

    def tearDown(self):
        for p in reversed(self._patches):
            p.stop()
        logging.disable(logging.NOTSET)


class OperationsApiTests(_ApiTestCase):
    def test_start_operation_returns_accepted(self):
        from jiracdc.services.operation_types import OperationKind

        self.processor.start_operation.return_value = _operation("pending")

        resp = self.client.post("/api/operations/", json={"kind": "bootstrap", "page_size": 25})

        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["id"], "op-1")
        self.assertEqual(resp.json()["status"], "pending")
        kind, config = self.processor.start_operation.call_args[0]
        self.assertEqual(kind, OperationKind.BOOTSTRAP)
        self.assertEqual(config.project_key, "PROJ")
        self.assertEqual(config.page_size, 25)
        self.assertEqual(config.triggered_by, "api")

    def test_start_operation_conflict(self):
        from jiracdc.errors import OperationConflictError

        self.processor.start_operation.side_effect = OperationConflictError(
            "PROJ already has an active operation", active_operation_id="op-9"
        )

        resp = self.client.post("/api/operations/", json={"kind": "reconcile"})

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["active_operation_id"], "op-9")

    def test_start_operation_invalid_config(self):
        from jiracdc.errors import ValidationError

        self.processor.start_operation.side_effect = ValidationError("Invalid project key")

        resp = self.client.post("/api/operations/", json={"kind": "bootstrap", "project_key": "bad key"})

        self.assertEqual(resp.status_code, 422)

    def test_start_operation_after_shutdown_is_unavailable(self):
        from jiracdc.errors import InvalidOperationStateError

        self.processor.start_operation.side_effect = InvalidOperationStateError("Processor is shut down")

        resp = self.client.post("/api/operations/", json={"kind": "reconcile"})

        self.assertEqual(resp.status_code, 503)

    def test_unknown_kind_is_rejected(self):
        resp = self.client.post("/api/operations/", json={"kind": "explode"})

        self.assertEqual(resp.status_code, 422)
        self.processor.start_operation.assert_not_called()

    def test_get_operation_not_found(self):
        from jiracdc.errors import OperationNotFoundError

        self.processor.get_operation.side_effect = OperationNotFoundError("Operation missing not found")

        resp = self.client.get("/api/operations/missing")

        self.assertEqual(resp.status_code, 404)

    def test_get_operation(self):
        self.processor.get_operation.return_value = _operation("completed")

        resp = self.client.get("/api/operations/op-1")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "completed")
        self.assertEqual(resp.json()["config"]["project_key"], "PROJ")

    def test_operation_progress_includes_percent(self):
        from jiracdc.services.progress import Progress

        self.processor.get_operation.return_value = _operation(
            progress=Progress(total_steps=8, completed_steps=2, last_message="Synced PROJ-2")
        )

        resp = self.client.get("/api/operations/op-1")

        self.assertEqual(
            resp.json()["progress"],
            {"total_steps": 8, "completed_steps": 2, "last_message": "Synced PROJ-2", "percent": 25.0},
        )

    def test_list_operations_with_status_filter(self):
        from jiracdc.services.operation_types import OperationStatus

        self.processor.list_operations.return_value = [_operation("failed")]

        resp = self.client.get("/api/operations/", params={"status": "failed"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()), 1)
        self.processor.list_operations.assert_called_once_with(OperationStatus.FAILED)

    def test_cancel_terminal_operation_conflicts(self):
        from jiracdc.errors import InvalidOperationStateError

        self.processor.cancel_operation.side_effect = InvalidOperationStateError("already completed")

        resp = self.client.post("/api/operations/op-1/cancel")

        self.assertEqual(resp.status_code, 409)

    def test_cancel_operation(self):
        self.processor.cancel_operation.return_value = _operation("cancelled")

        resp = self.client.post("/api/operations/op-1/cancel")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "cancelled")

    def test_cleanup(self):
        self.processor.cleanup_old_operations.return_value = 3

        resp = self.client.post("/api/operations/cleanup", params={"retention_days": 1.5})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"removed": 3})
        self.processor.cleanup_old_operations.assert_called_once_with(1.5)

    def test_cleanup_rejects_negative_retention(self):
        resp = self.client.post("/api/operations/cleanup", params={"retention_days": -1})

        self.assertEqual(resp.status_code, 422)

    def test_api_token_required_when_configured(self):
        self.processor.list_operations.return_value = []

        with patch.object(self.settings, "api_token", "secret"):
            denied = self.client.get("/api/operations/")
            allowed = self.client.get("/api/operations/", headers={"Authorization": "Bearer secret"})

        self.assertEqual(denied.status_code, 401)
        self.assertEqual(denied.headers.get("www-authenticate"), "Bearer")
        self.assertEqual(allowed.status_code, 200)

    def test_missing_processor_is_unavailable(self):
        del self.app.state.processor

        resp = self.client.get("/api/operations/")

        self.assertEqual(resp.status_code, 503)


def _synced_issue(issue_key="PROJ-1"):
    from jiracdc.models.synced_issue import SyncedIssue

    return SyncedIssue(
        project_key="PROJ",
        issue_key=issue_key,
        source_updated_at=datetime(2024, 1, 3, 9, 0),
        file_path=f"{issue_key}.md",
        commit_hash="a" * 40,
        last_synced_at=datetime(2024, 1, 3, 9, 5),
    )


class IssuesApiTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.ledger = Mock()
        self.processor.ledger = self.ledger

    def test_list_issues_defaults_to_configured_project(self):
        self.ledger.list_issues.return_value = [_synced_issue("PROJ-1"), _synced_issue("PROJ-2")]

        resp = self.client.get("/api/issues/")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual([i["issue_key"] for i in resp.json()], ["PROJ-1", "PROJ-2"])
        self.assertEqual(resp.json()[0]["file_path"], "PROJ-1.md")
        self.ledger.list_issues.assert_called_once_with("PROJ")

    def test_list_issues_for_project(self):
        self.ledger.list_issues.return_value = []

        resp = self.client.get("/api/issues/", params={"project_key": "OPS"})

        self.assertEqual(resp.json(), [])
        self.ledger.list_issues.assert_called_once_with("OPS")

    def test_get_issue(self):
        self.ledger.get_synced_issue.return_value = _synced_issue("PROJ-7")

        resp = self.client.get("/api/issues/PROJ-7")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["commit_hash"], "a" * 40)
        self.ledger.get_synced_issue.assert_called_once_with("PROJ", "PROJ-7")

    def test_get_unsynced_issue_not_found(self):
        self.ledger.get_synced_issue.return_value = None

        resp = self.client.get("/api/issues/PROJ-404")

        self.assertEqual(resp.status_code, 404)

    def test_missing_ledger_is_unavailable(self):
        self.processor.ledger = None

        resp = self.client.get("/api/issues/")

        self.assertEqual(resp.status_code, 503)

    def test_sync_issue(self):
        from jiracdc.services.sync_engine import SyncOperationType, SyncResult, SyncResultStatus

        self.processor.sync_issue.return_value = SyncResult(
            issue_key="PROJ-3",
            operation_type=SyncOperationType.UPDATE,
            status=SyncResultStatus.COMPLETED,
            file_path="PROJ-3.md",
            commit_hash="b" * 40,
        )

        resp = self.client.post("/api/issues/PROJ-3/sync", params={"force_refresh": "true"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["operation_type"], "update")
        self.assertEqual(resp.json()["status"], "completed")
        self.processor.sync_issue.assert_called_once_with("PROJ-3", force_refresh=True)

    def test_sync_issue_conflicts_with_running_operation(self):
        from jiracdc.errors import OperationConflictError

        self.processor.sync_issue.side_effect = OperationConflictError(
            "Operation op-4 is still using the repository", active_operation_id="op-4"
        )

        resp = self.client.post("/api/issues/PROJ-3/sync")

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["active_operation_id"], "op-4")

    def test_sync_issue_error_mapping(self):
        from jiracdc.errors import (
            GitWriteError,
            InvalidOperationStateError,
            NotFoundError,
            ValidationError,
        )

        cases = [
            (ValidationError("Invalid issue key"), 422),
            (InvalidOperationStateError("Processor is shut down"), 503),
            (NotFoundError("Jira API error: status 404", status_code=404), 404),
            (GitWriteError("git push failed"), 502),
        ]
        for error, expected in cases:
            with self.subTest(error=type(error).__name__):
                self.processor.sync_issue.side_effect = error
                resp = self.client.post("/api/issues/PROJ-3/sync")
                self.assertEqual(resp.status_code, expected)


class WebhookApiTests(_ApiTestCase):
    def _event(self, key="PROJ-1"):
        return {"webhookEvent": "jira:issue_updated", "issue": {"key": key}}

    def test_webhook_queues_early_poll(self):
        resp = self.client.post("/api/webhooks/jira", json=self._event())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"queued": True})
        self.scheduler.trigger_now.assert_called_once_with(triggered_by="webhook")

    def test_webhook_rejects_malformed_payload(self):
        for payload in ({"issue": {"key": "PROJ-1"}}, {"webhookEvent": "jira:issue_updated"}):
            with self.subTest(payload=payload):
                resp = self.client.post("/api/webhooks/jira", json=payload)
                self.assertEqual(resp.status_code, 400)
        self.scheduler.trigger_now.assert_not_called()

    def test_webhook_token(self):
        with patch.object(self.settings, "webhook_token", "hook"):
            denied = self.client.post("/api/webhooks/jira", json=self._event(), params={"token": "nope"})
            allowed = self.client.post("/api/webhooks/jira", json=self._event(), params={"token": "hook"})

        self.assertEqual(denied.status_code, 401)
        self.assertEqual(allowed.status_code, 200)

    def test_webhook_for_other_project_is_ignored(self):
        resp = self.client.post("/api/webhooks/jira", json=self._event("OTHER-5"))

        self.assertEqual(resp.json(), {"queued": False})
        self.scheduler.trigger_now.assert_not_called()


if __name__ == "__main__":
    unittest.main()

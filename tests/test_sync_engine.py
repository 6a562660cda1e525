import threading
import unittest
from typing import Dict, List


def _record(key, status="Open", updated="2024-01-03T09:00:00.000+0000"):
    return {
        "key": key,
        "fields": {"summary": f"Summary of {key}", "status": {"name": status}, "updated": updated},
    }


class _FakeJiraClient:
    """In-memory Jira honouring startAt/maxResults."""

    def __init__(self, records: List[Dict]):
        self.records = list(records)
        self.search_calls = []
        self.issue_calls = []

    def search_issues(self, jql, start_at=0, max_results=50, fields=None, cancel_event=None):
        from jiracdc.services.jira_client import SearchPage

        self.search_calls.append({"jql": jql, "start_at": start_at, "max_results": max_results})
        items = self.records[start_at:start_at + max_results]
        return SearchPage(items=items, total_count=len(self.records), page_offset=start_at, page_size=max_results)

    def get_issue(self, key, fields=None, cancel_event=None):
        from jiracdc.errors import NotFoundError

        self.issue_calls.append(key)
        for record in self.records:
            if record["key"] == key:
                return record
        raise NotFoundError(f"{key} not found", status_code=404)

    def get_project(self, key, cancel_event=None):
        return {"key": key, "name": f"Project {key}", "id": "10000"}


class _FakeWriter:
    def __init__(self, fail_keys=(), fail_push=False, git_fail_keys=()):
        self.files = {}
        self.fail_keys = set(fail_keys)
        self.git_fail_keys = set(git_fail_keys)
        self.fail_push = fail_push
        self.pushes = 0
        self.commits = 0

    def init_repository(self):
        return "head"

    def pull(self):
        return "head"

    def create_or_update_issue_file(self, data):
        from jiracdc.errors import GitWriteError
        from jiracdc.services.git_writer import FileWriteResult

        if data.key in self.fail_keys:
            raise ValueError(f"cannot render {data.key}")
        if data.key in self.git_fail_keys:
            raise GitWriteError(f"git commit failed for {data.key}")
        created = data.key not in self.files
        self.files[data.key] = data
        self.commits += 1
        return FileWriteResult(path=f"{data.key}.md", commit_hash=f"c{self.commits}", created=created, changed=True)

    def delete_issue_file(self, key):
        from jiracdc.services.git_writer import FileWriteResult

        if key not in self.files:
            return FileWriteResult(path=f"{key}.md", changed=False)
        del self.files[key]
        self.commits += 1
        return FileWriteResult(path=f"{key}.md", commit_hash=f"c{self.commits}", changed=True)

    def push_changes(self, branch=None):
        from jiracdc.errors import GitWriteError

        if self.fail_push:
            raise GitWriteError("remote rejected push")
        self.pushes += 1

    def list_issue_keys(self):
        return set(self.files)


class _MemoryLedger:
    def __init__(self):
        self.issues = {}

    def get_issue_updated(self, project_key, issue_key):
        return self.issues.get(issue_key)

    def record_issue(self, project_key, issue_key, source_updated_at, file_path=None, commit_hash=None):
        self.issues[issue_key] = source_updated_at

    def forget_issue(self, project_key, issue_key):
        self.issues.pop(issue_key, None)


def _engine(records, writer=None, ledger=None):
    from jiracdc.services.sync_engine import SyncEngine

    client = _FakeJiraClient(records)
    writer = writer or _FakeWriter()
    return SyncEngine(client, writer, ledger), client, writer


class BootstrapTests(unittest.TestCase):
    def test_paginates_all_pages_without_duplicates(self):
        from jiracdc.services.progress import ProgressTracker

        records = [_record(f"PROJ-{i}") for i in range(1, 151)]
        engine, client, writer = _engine(records)
        progress = ProgressTracker()

        results = engine.bootstrap("PROJ", progress=progress, page_size=50)

        self.assertEqual([c["start_at"] for c in client.search_calls], [0, 50, 100])
        self.assertEqual(len(results), 150)
        self.assertEqual(len({r.issue_key for r in results}), 150)
        self.assertEqual(writer.pushes, 3)
        snapshot = progress.snapshot()
        self.assertEqual(snapshot.completed_steps, 150)
        self.assertEqual(snapshot.total_steps, 150)

    def test_single_write_failure_does_not_abort_batch(self):
        from jiracdc.services.sync_engine import SyncResultStatus

        records = [_record(f"PROJ-{i}") for i in range(1, 6)]
        engine, _, writer = _engine(records, writer=_FakeWriter(fail_keys={"PROJ-3"}))

        results = engine.bootstrap("PROJ", page_size=2)

        statuses = {r.issue_key: r.status for r in results}
        self.assertEqual(statuses["PROJ-3"], SyncResultStatus.FAILED)
        self.assertEqual(
            [k for k, s in statuses.items() if s == SyncResultStatus.COMPLETED],
            ["PROJ-1", "PROJ-2", "PROJ-4", "PROJ-5"],
        )
        self.assertIn("cannot render", next(r.error for r in results if r.issue_key == "PROJ-3"))

    def test_git_write_failure_aborts_batch(self):
        from jiracdc.errors import GitWriteError

        records = [_record(f"PROJ-{i}") for i in range(1, 6)]
        engine, _, writer = _engine(records, writer=_FakeWriter(git_fail_keys={"PROJ-3"}))

        with self.assertRaises(GitWriteError):
            engine.bootstrap("PROJ", page_size=2)

        self.assertEqual(set(writer.files), {"PROJ-1", "PROJ-2"})
        self.assertEqual(writer.pushes, 1)

    def test_push_failure_aborts(self):
        from jiracdc.errors import GitWriteError

        engine, _, _ = _engine([_record("PROJ-1")], writer=_FakeWriter(fail_push=True))

        with self.assertRaises(GitWriteError):
            engine.bootstrap("PROJ")

    def test_cancel_pushes_committed_work_and_raises(self):
        from jiracdc.errors import OperationCancelledError
        from jiracdc.services.progress import ProgressTracker

        records = [_record(f"PROJ-{i}") for i in range(1, 11)]
        cancel = threading.Event()

        def _listener(progress):
            if progress.completed_steps == 3:
                cancel.set()

        engine, _, writer = _engine(records)

        with self.assertRaises(OperationCancelledError):
            engine.bootstrap("PROJ", progress=ProgressTracker(listener=_listener), cancel_event=cancel, page_size=50)
        self.assertEqual(len(writer.files), 3)
        self.assertEqual(writer.pushes, 1)


class SynchronizeProjectTests(unittest.TestCase):
    def test_single_search_single_push(self):
        from jiracdc.services.progress import ProgressTracker
        from jiracdc.services.sync_engine import SyncOperationType

        records = [_record(f"PROJ-{i}") for i in range(1, 4)]
        engine, client, writer = _engine(records)
        progress = ProgressTracker()

        results = engine.synchronize_project("PROJ", progress=progress)

        self.assertEqual(len(client.search_calls), 1)
        self.assertEqual(client.search_calls[0]["max_results"], 1000)
        self.assertEqual(writer.pushes, 1)
        self.assertTrue(all(r.operation_type == SyncOperationType.CREATE for r in results))
        self.assertEqual(progress.snapshot().completed_steps, 3)

    def test_active_only_filters_and_queries(self):
        records = [_record("PROJ-1", "Open"), _record("PROJ-2", "Done")]
        engine, client, writer = _engine(records)

        results = engine.synchronize_project("PROJ", active_only=True)

        self.assertIn("status != Done", client.search_calls[0]["jql"])
        self.assertEqual([r.issue_key for r in results], ["PROJ-1"])

    def test_unchanged_issues_are_skipped_unless_forced(self):
        from jiracdc.services.sync_engine import SyncResultStatus

        records = [_record("PROJ-1")]
        ledger = _MemoryLedger()
        engine, _, writer = _engine(records, ledger=ledger)

        first = engine.synchronize_project("PROJ")
        second = engine.synchronize_project("PROJ")
        forced = engine.synchronize_project("PROJ", force_refresh=True)

        self.assertEqual(first[0].status, SyncResultStatus.COMPLETED)
        self.assertEqual(second[0].status, SyncResultStatus.SKIPPED)
        self.assertEqual(forced[0].status, SyncResultStatus.COMPLETED)
        self.assertEqual(writer.commits, 2)


class SynchronizeIssueTests(unittest.TestCase):
    def test_writes_and_pushes_one_issue(self):
        from jiracdc.services.sync_engine import SyncResultStatus

        engine, client, writer = _engine([_record("PROJ-7")])

        result = engine.synchronize_issue("PROJ-7")

        self.assertEqual(result.status, SyncResultStatus.COMPLETED)
        self.assertEqual(result.file_path, "PROJ-7.md")
        self.assertEqual(writer.pushes, 1)

    def test_missing_issue_propagates(self):
        from jiracdc.errors import NotFoundError

        engine, _, writer = _engine([])

        with self.assertRaises(NotFoundError):
            engine.synchronize_issue("PROJ-404")
        self.assertEqual(writer.pushes, 0)


class CleanupSupportTests(unittest.TestCase):
    def test_collect_keys_and_remove_orphans(self):
        from jiracdc.services.sync_engine import SyncOperationType, SyncResultStatus

        records = [_record(f"PROJ-{i}") for i in range(1, 4)]
        engine, _, writer = _engine(records)
        engine.bootstrap("PROJ")
        engine.client.records = records[:1]

        orphans = set(writer.list_issue_keys()) - engine.collect_source_keys("PROJ", page_size=1)
        results = engine.remove_issues(orphans)

        self.assertEqual(orphans, {"PROJ-2", "PROJ-3"})
        self.assertTrue(all(r.operation_type == SyncOperationType.DELETE for r in results))
        self.assertTrue(all(r.status == SyncResultStatus.COMPLETED for r in results))
        self.assertEqual(set(writer.files), {"PROJ-1"})


if __name__ == "__main__":
    unittest.main()

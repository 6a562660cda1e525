import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


class SyncLedgerTests(unittest.TestCase):
    def setUp(self):
        from jiracdc.models import Base

        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def tearDown(self):
        self.engine.dispose()

    def _ledger(self):
        from jiracdc.services.ledger import SyncLedger

        return SyncLedger(self.Session)

    def test_last_sync_round_trip_is_utc_aware(self):
        ledger = self._ledger()
        self.assertIsNone(ledger.get_last_sync("PROJ"))

        local = datetime(2024, 5, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        ledger.record_sync("PROJ", local, operation_id="op-1", operation_kind="bootstrap")

        stored = ledger.get_last_sync("PROJ")
        self.assertEqual(stored, datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(stored.tzinfo, timezone.utc)

    def test_record_sync_updates_existing_row(self):
        from jiracdc.models import SyncState

        ledger = self._ledger()
        ledger.record_sync("PROJ", datetime(2024, 1, 1, tzinfo=timezone.utc))
        ledger.record_sync("PROJ", datetime(2024, 1, 2, tzinfo=timezone.utc), operation_kind="reconcile")

        db = self.Session()
        try:
            rows = db.query(SyncState).all()
            self.assertEqual(len(rows), 1)
            self.assertEqual(rows[0].last_operation_kind, "reconcile")
        finally:
            db.close()

    def test_issue_records(self):
        ledger = self._ledger()
        updated = datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc)

        self.assertIsNone(ledger.get_issue_updated("PROJ", "PROJ-1"))
        ledger.record_issue("PROJ", "PROJ-1", updated, file_path="PROJ-1.md", commit_hash="abc")
        self.assertEqual(ledger.get_issue_updated("PROJ", "PROJ-1"), updated)

        later = updated + timedelta(hours=1)
        ledger.record_issue("PROJ", "PROJ-1", later, file_path="PROJ-1.md")
        self.assertEqual(ledger.get_issue_updated("PROJ", "PROJ-1"), later)

        ledger.forget_issue("PROJ", "PROJ-1")
        self.assertIsNone(ledger.get_issue_updated("PROJ", "PROJ-1"))

    def test_list_and_get_synced_issues(self):
        ledger = self._ledger()
        updated = datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc)
        ledger.record_issue("PROJ", "PROJ-2", updated, file_path="PROJ-2.md", commit_hash="def")
        ledger.record_issue("PROJ", "PROJ-1", updated, file_path="PROJ-1.md", commit_hash="abc")
        ledger.record_issue("OPS", "OPS-1", updated, file_path="OPS-1.md")

        self.assertEqual([i.issue_key for i in ledger.list_issues("PROJ")], ["PROJ-1", "PROJ-2"])
        self.assertEqual(len(ledger.list_issues()), 3)

        issue = ledger.get_synced_issue("PROJ", "PROJ-2")
        self.assertEqual(issue.commit_hash, "def")
        self.assertEqual(issue.file_path, "PROJ-2.md")
        self.assertIsNone(ledger.get_synced_issue("PROJ", "PROJ-9"))


if __name__ == "__main__":
    unittest.main()

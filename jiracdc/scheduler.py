"""Background scheduler for periodic reconcile and retention"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from jiracdc.errors import OperationConflictError, SyncError
from jiracdc.services.operation_types import Operation, OperationConfig, OperationKind
from jiracdc.services.operations import OperationProcessor

logger = logging.getLogger(__name__)

POLL_JOB_ID = "reconcile_poll"
RETENTION_JOB_ID = "operation_retention"


class SyncScheduler:
    """Scheduler for periodic issue synchronization"""

    def __init__(
        self,
        processor: OperationProcessor,
        project_key: str,
        *,
        poll_interval_minutes: int = 5,
        retention_days: float = 7,
        retention_check_interval_minutes: int = 60,
        active_only: bool = False,
        page_size: int = 50,
    ):
        self.processor = processor
        self.project_key = project_key
        self.poll_interval_minutes = poll_interval_minutes
        self.retention_days = retention_days
        self.retention_check_interval_minutes = retention_check_interval_minutes
        self.active_only = active_only
        self.page_size = page_size
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            func=self._poll_job,
            trigger=IntervalTrigger(minutes=self.poll_interval_minutes),
            id=POLL_JOB_ID,
            args=["schedule"],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            func=self._retention_job,
            trigger=IntervalTrigger(minutes=self.retention_check_interval_minutes),
            id=RETENTION_JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(
            f"Sync scheduler started: reconcile {self.project_key} every "
            f"{self.poll_interval_minutes} minutes"
        )

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def trigger_now(self, triggered_by: str = "webhook") -> bool:
        """Request an early poll. Returns False when the job is not scheduled."""
        job = self.scheduler.get_job(POLL_JOB_ID)
        if job is None:
            logger.warning("Early poll requested but the scheduler is not running")
            return False
        job.modify(next_run_time=datetime.now(timezone.utc), args=[triggered_by])
        logger.info(f"Early poll requested by {triggered_by}")
        return True

    def run_reconcile(self, triggered_by: str = "schedule") -> Optional[Operation]:
        """Start a reconcile unless one is already in flight for the project."""
        config = OperationConfig(
            project_key=self.project_key,
            active_only=self.active_only,
            page_size=self.page_size,
            triggered_by=triggered_by,
        )
        try:
            return self.processor.start_operation(OperationKind.RECONCILE, config)
        except OperationConflictError as e:
            # Coalesced into the active operation.
            logger.info(f"Skipping reconcile of {self.project_key}: {e}")
            return None

    def _poll_job(self, triggered_by: str = "schedule"):
        """Job function to reconcile the project"""
        try:
            operation = self.run_reconcile(triggered_by)
            if operation is not None:
                logger.info(f"Scheduled reconcile {operation.id} queued for {self.project_key}")
        except SyncError as e:
            logger.error(f"Scheduled reconcile failed for {self.project_key}: {e}")
        finally:
            # One-off early runs revert to the regular schedule label.
            job = self.scheduler.get_job(POLL_JOB_ID)
            if job is not None and triggered_by != "schedule":
                job.modify(args=["schedule"])

    def _retention_job(self):
        """Job function to evict old operations"""
        try:
            removed = self.processor.cleanup_old_operations(self.retention_days)
            logger.debug(f"Retention check removed {removed} operations")
        except SyncError as e:
            logger.error(f"Operation retention check failed: {e}")

"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from jiracdc.api import issues, operations, webhooks
from jiracdc.config import settings
from jiracdc.models.base import init_db
from jiracdc.scheduler import SyncScheduler
from jiracdc.services.git_writer import writer_from_settings
from jiracdc.services.jira_client import client_from_settings
from jiracdc.services.ledger import SyncLedger
from jiracdc.services.operation_types import OperationStatus
from jiracdc.services.operations import OperationProcessor
from jiracdc.services.sync_engine import SyncEngine

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_processor() -> OperationProcessor:
    """Wire the Jira client, git writer and ledger into an operation processor"""
    ledger = SyncLedger()
    engine = SyncEngine(
        client_from_settings(settings),
        writer_from_settings(settings),
        ledger,
        search_limit=settings.search_limit,
    )
    return OperationProcessor(
        engine,
        ledger,
        project_key=settings.jira_project_key,
        max_parallel_tasks=settings.max_parallel_tasks,
        max_concurrent_operations=settings.max_concurrent_operations,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting JIRA CDC Sync Service")
    init_db()
    processor = build_processor()
    scheduler = SyncScheduler(
        processor,
        settings.jira_project_key,
        poll_interval_minutes=settings.poll_interval_minutes,
        retention_days=settings.operation_retention_days,
        retention_check_interval_minutes=settings.retention_check_interval_minutes,
        active_only=settings.active_issues_only,
        page_size=settings.bootstrap_page_size,
    )
    app.state.processor = processor
    app.state.scheduler = scheduler
    scheduler.start()
    yield
    # Shutdown
    logger.info("Stopping JIRA CDC Sync Service")
    scheduler.stop()
    processor.shutdown(wait=True)


app = FastAPI(
    title="JIRA CDC Sync Service",
    description="Mirror Jira issues into a git repository",
    version="1.0.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(operations.router)
app.include_router(issues.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    processor = getattr(app.state, "processor", None)
    active = processor.list_operations(OperationStatus.RUNNING) if processor is not None else []
    return {
        "status": "healthy",
        "service": "JIRA CDC Sync",
        "project": settings.jira_project_key,
        "running_operations": len(active),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jiracdc.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )

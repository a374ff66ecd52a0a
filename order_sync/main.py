"""
FastAPI application for order stage mail sync.
"""

from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from order_sync import __version__
from order_sync.config import MailboxAccount, settings
from order_sync.core.database import Database
from order_sync.core.exceptions import (
    AuthenticationFailure,
    MailboxUnavailable,
    OrderSyncError,
    StorageUnavailable,
)
from order_sync.core.logging import configure_logging, get_logger
from order_sync.core.models import MailboxKey
from order_sync.core.stages import STAGES
from order_sync.processors.reclassify import ReclassifyProcessor
from order_sync.processors.sync import SyncProcessor
from order_sync.scheduler import start_scheduler, stop_scheduler

log = get_logger(__name__)

SYNC_ERROR_STATUS = {
    AuthenticationFailure: 401,
    StorageUnavailable: 503,
    MailboxUnavailable: 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    configure_logging(log_level=settings.log_level, json_output=settings.json_logs)
    log.info("application_starting", version=__version__)

    # Initialize database schema
    db = Database()
    db.init_schema()

    if settings.scheduler_enabled:
        start_scheduler()
    else:
        log.info("scheduler_disabled", reason="use POST /sync or the sync CLI")

    yield

    # Shutdown
    if settings.scheduler_enabled:
        stop_scheduler()
    log.info("application_stopped")


app = FastAPI(
    title="Order Stage Mail Sync",
    description="Mailbox sync and purchase order stage advancement for Ganesh International",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)


# Dependencies

def get_db() -> Database:
    return Database()


def get_sync_processor() -> SyncProcessor:
    return SyncProcessor()


def select_accounts(organization_id: str | None, mailbox: str | None) -> list[MailboxAccount]:
    """Configured mailboxes matching the optional filters."""
    return [
        account
        for account in settings.mailbox_accounts()
        if (not organization_id or account.organization_id == organization_id)
        and (not mailbox or account.address == mailbox)
    ]


# Request/Response Models

class SyncRequest(BaseModel):
    organization_id: str | None = None
    mailbox: str | None = None


class ReclassifyRequest(BaseModel):
    organization_id: str | None = None
    mailbox: str | None = None
    limit: int = 20
    dry_run: bool = False


class StatsResponse(BaseModel):
    total: int = 0
    unclassified: int = 0
    unmatched: int = 0
    matched: int = 0
    advanced: int = 0
    rejected: int = 0


# Endpoints

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get("/stages")
async def list_stages():
    """The order stage catalog."""
    return [asdict(stage) for stage in STAGES]


@app.get("/stats", response_model=StatsResponse)
def get_stats(organization_id: str | None = None, db: Database = Depends(get_db)):
    """Message counts by outcome."""
    try:
        stats = db.get_stats(organization_id)
    except StorageUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return StatsResponse(**stats)


@app.post("/sync")
def trigger_sync(
    request: SyncRequest,
    processor: SyncProcessor = Depends(get_sync_processor),
):
    """
    Run one sync cycle for the selected mailboxes.

    Runs synchronously and returns one summary per mailbox. A mailbox that
    fails is reported in `errors`; the others still run. If every mailbox
    fails, the first failure becomes the HTTP status.
    """
    accounts = select_accounts(request.organization_id, request.mailbox)
    if not accounts:
        raise HTTPException(status_code=404, detail="No matching mailbox configured")

    results = []
    errors = []
    for account in accounts:
        try:
            result = processor.sync_account(account)
        except (AuthenticationFailure, StorageUnavailable, MailboxUnavailable) as e:
            log.error("mailbox_sync_failed", mailbox=account.address, error=str(e))
            errors.append({
                "organization_id": account.organization_id,
                "mailbox": account.address,
                "status_code": next(code for cls, code in SYNC_ERROR_STATUS.items() if isinstance(e, cls)),
                "error": str(e),
            })
            continue
        results.append(result.to_dict())

    if not results:
        raise HTTPException(status_code=errors[0]["status_code"], detail=errors[0]["error"])

    return {
        "status": "partial" if errors else "completed",
        "results": results,
        "errors": errors,
    }


@app.post("/reclassify")
async def trigger_reclassify(
    request: ReclassifyRequest,
    background_tasks: BackgroundTasks,
):
    """
    Classify messages stored while the classifier was unavailable.

    Runs in background to avoid timeout.
    """
    accounts = select_accounts(request.organization_id, request.mailbox)
    if not accounts:
        raise HTTPException(status_code=404, detail="No matching mailbox configured")

    keys = [MailboxKey(account.organization_id, account.address) for account in accounts]

    def run_reclassify():
        processor = ReclassifyProcessor(dry_run=request.dry_run, limit=request.limit)
        for key in keys:
            try:
                processor.process(key)
            except OrderSyncError as e:
                log.error("reclassify_failed", mailbox=str(key), error=str(e))

    background_tasks.add_task(run_reclassify)

    return {
        "status": "reclassify_started",
        "mailboxes": [str(key) for key in keys],
        "limit": request.limit,
        "dry_run": request.dry_run,
    }


@app.get("/orders/{order_id}/history")
def get_order_history(
    order_id: str,
    organization_id: str | None = None,
    db: Database = Depends(get_db),
):
    """Stage history for one order, oldest first."""
    organization_id = organization_id or settings.organization_id
    if not organization_id:
        raise HTTPException(status_code=400, detail="organization_id is required")

    try:
        entries = db.get_order_history(organization_id, order_id)
    except StorageUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return [
        {
            **asdict(entry),
            "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        }
        for entry in entries
    ]


# Run with: uvicorn order_sync.main:app --host 0.0.0.0 --port 8001

"""
APScheduler job runner for periodic mailbox sync.

One interval job per configured mailbox, so mailboxes sync in parallel
while cycles for the same mailbox never overlap.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from order_sync.config import MailboxAccount, settings
from order_sync.core.logging import get_logger

log = get_logger(__name__)

# Global scheduler instance
_scheduler: BackgroundScheduler | None = None


def job_id(account: MailboxAccount) -> str:
    return f"sync:{account.organization_id}:{account.address}"


def sync_mailbox_job(account: MailboxAccount):
    """Scheduled job: one sync cycle for one mailbox."""
    from order_sync.processors.sync import SyncProcessor

    log.info("scheduled_job_starting", job="sync_mailbox", mailbox=account.address)
    try:
        processor = SyncProcessor()
        result = processor.sync_account(account)
        log.info("scheduled_job_complete", job="sync_mailbox", **result.log_fields())
    except Exception as e:
        log.error("scheduled_job_error", job="sync_mailbox", mailbox=account.address, error=str(e))


def start_scheduler(
    interval_minutes: int | None = None,
    accounts: list[MailboxAccount] | None = None,
) -> BackgroundScheduler:
    """
    Start the background scheduler with one sync job per mailbox.

    Args:
        interval_minutes: How often each mailbox is synced
        accounts: Mailboxes to schedule (default: all configured)

    Returns:
        The scheduler instance
    """
    global _scheduler

    if _scheduler is not None:
        log.warning("scheduler_already_running")
        return _scheduler

    interval_minutes = interval_minutes or settings.scheduler_interval_minutes
    accounts = accounts if accounts is not None else settings.mailbox_accounts()

    _scheduler = BackgroundScheduler()

    for account in accounts:
        _scheduler.add_job(
            sync_mailbox_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            args=[account],
            id=job_id(account),
            name=f"Sync {account.address}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    _scheduler.start()
    log.info("scheduler_started", interval_minutes=interval_minutes, mailboxes=len(accounts))

    return _scheduler


def stop_scheduler():
    """Stop the background scheduler."""
    global _scheduler

    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        log.info("scheduler_stopped")


def get_scheduler() -> BackgroundScheduler | None:
    """Get the current scheduler instance."""
    return _scheduler

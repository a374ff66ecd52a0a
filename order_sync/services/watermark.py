"""
Per-mailbox sync cursor.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

from order_sync.config import settings
from order_sync.core.database import Database
from order_sync.core.logging import get_logger
from order_sync.core.models import MailboxKey

log = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatermarkTracker:
    """Reads and commits the last successful sync time for each mailbox."""

    def __init__(
        self,
        db: Database,
        lookback_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.lookback_days = (
            lookback_days if lookback_days is not None else settings.default_lookback_days
        )
        self.clock = clock

    def get_window_start(self, key: MailboxKey) -> datetime:
        """Stored watermark, or now minus the default lookback for a new mailbox."""
        watermark = self.db.get_watermark(key)
        if watermark is not None:
            return watermark

        start = self.clock() - timedelta(days=self.lookback_days)
        log.info("watermark_missing_using_lookback", mailbox=str(key), window_start=start.isoformat())
        return start

    def commit(self, key: MailboxKey, timestamp: datetime) -> None:
        self.db.set_watermark(key, timestamp)

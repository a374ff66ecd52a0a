"""Core modules for order stage sync."""

from .logging import configure_logging, get_logger
from .models import (
    MailboxKey,
    Message,
    MessageOutcome,
    MatchVerdict,
    OrderSummary,
    HistoryEntry,
    SyncResult,
)
from .database import Database

__all__ = [
    "configure_logging",
    "get_logger",
    "MailboxKey",
    "Message",
    "MessageOutcome",
    "MatchVerdict",
    "OrderSummary",
    "HistoryEntry",
    "SyncResult",
    "Database",
]

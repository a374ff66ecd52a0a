"""Mailbox processors."""

from .base import BaseProcessor
from .reclassify import ReclassifyProcessor
from .sync import SyncProcessor

__all__ = ["BaseProcessor", "ReclassifyProcessor", "SyncProcessor"]

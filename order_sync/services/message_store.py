"""
Message store: durable record of every ingested message per mailbox.
"""

from order_sync.core.database import Database
from order_sync.core.logging import get_logger
from order_sync.core.models import MailboxKey, Message

log = get_logger(__name__)


class MessageStore:
    """Deduplicating store keyed on (organization, mailbox, provider id)."""

    def __init__(self, db: Database):
        self.db = db

    def exists(self, key: MailboxKey, provider_message_id: str) -> bool:
        return self.db.message_exists(key, provider_message_id)

    def existing_ids(self, key: MailboxKey, provider_message_ids: list[str]) -> set[str]:
        """Provider ids from the list that are already stored."""
        return self.db.existing_message_ids(key, provider_message_ids)

    def new_ids(self, key: MailboxKey, provider_message_ids: list[str]) -> list[str]:
        """
        Drop ids already stored, keeping listing order and removing repeats.
        """
        stored = self.existing_ids(key, provider_message_ids)
        seen: set[str] = set()
        fresh = []
        for provider_id in provider_message_ids:
            if provider_id in stored or provider_id in seen:
                continue
            seen.add(provider_id)
            fresh.append(provider_id)

        if stored:
            log.info("messages_already_stored", mailbox=str(key), count=len(stored))
        return fresh

    def insert(self, message: Message) -> Message:
        """Upsert; a conflicting insert returns the existing record."""
        return self.db.insert_message(message)

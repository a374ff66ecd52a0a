"""
Mailbox source interface and factory.

A source lists provider message ids received since a point in time and
fetches one message in full. Sources are used as context managers for the
duration of a sync cycle.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime

from order_sync.config import MailboxAccount
from order_sync.core.models import MailboxKey, Message

# Inline images that mail clients embed in signatures
INLINE_IMAGE_PATTERNS = (
    re.compile(r"^image\d{0,3}\.(jpg|jpeg|png|gif)$", re.IGNORECASE),
    re.compile(r"^outlook-", re.IGNORECASE),
)


def is_real_attachment(filename: str | None) -> bool:
    """True for a named attachment that is not an inline signature image."""
    if not filename:
        return False
    return not any(pattern.match(filename) for pattern in INLINE_IMAGE_PATTERNS)


class MailboxSource(ABC):
    """Abstract mail provider for one mailbox."""

    def __init__(self, key: MailboxKey):
        self.key = key

    @abstractmethod
    def list_message_ids(self, since: datetime) -> list[str]:
        """
        Provider ids of messages received at or after `since`, oldest first.

        Raises:
            AuthenticationFailure: credentials rejected
            MailboxUnavailable: provider unreachable
        """

    @abstractmethod
    def fetch_message(self, provider_message_id: str) -> Message:
        """
        Full content of one message.

        Raises:
            MailboxUnavailable: the call failed or timed out
        """

    def open(self) -> None:
        """Connect and authenticate. Default is a no-op."""

    def close(self) -> None:
        """Release provider resources. Default is a no-op."""

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def get_mailbox_source(account: MailboxAccount) -> MailboxSource:
    """Build the source for a configured mailbox account."""
    key = MailboxKey(account.organization_id, account.address)

    if account.provider == "gmail":
        from order_sync.services.gmail import GmailClient

        return GmailClient(
            key,
            refresh_token=account.refresh_token,
            client_id=account.client_id,
            client_secret=account.client_secret,
        )

    from order_sync.services.imap import IMAPClient

    return IMAPClient(key, host=account.host, password=account.password)

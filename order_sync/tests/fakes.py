"""
In-memory fakes for the database, mailbox and classifier backend.
"""

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

from order_sync.classifiers.base import BaseClassifier
from order_sync.core.exceptions import AuthenticationFailure, MailboxUnavailable, StorageFailure
from order_sync.core.models import (
    CorrectionExample,
    HistoryEntry,
    MailboxKey,
    Member,
    Message,
    MessageOutcome,
    OrderSummary,
)
from order_sync.services.mailbox import MailboxSource

ORG = "org-ganesh"
MAILBOX = "orders@ganeshintnl.com"
KEY = MailboxKey(ORG, MAILBOX)
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeDatabase:
    """In-memory stand-in for Database with the same method contracts."""

    def __init__(self):
        self.orders: dict[tuple[str, str], OrderSummary] = {}
        self.pi_numbers: dict[tuple[str, str], str] = {}
        self.messages: list[Message] = []
        self.history: list[HistoryEntry] = []
        self.watermarks: dict[MailboxKey, datetime] = {}
        self.members: dict[str, list[Member]] = {}
        self.notifications = []
        self.corrections: list[CorrectionExample] = []
        self.fail_insert_for: set[str] = set()
        self.fail_notification_for: set[str] = set()
        self.advance_calls = []
        self._next_id = 1
        self._lock = threading.Lock()

    # Test helpers

    def add_order(self, order_id: str, stage: int, organization_id: str = ORG, **fields) -> OrderSummary:
        order = OrderSummary(order_id=order_id, current_stage=stage, **fields)
        self.orders[(organization_id, order_id)] = order
        return order

    def stage_of(self, order_id: str, organization_id: str = ORG) -> int:
        return self.orders[(organization_id, order_id)].current_stage

    def add_member(self, user_id: str, organization_id: str = ORG) -> None:
        self.members.setdefault(organization_id, []).append(
            Member(organization_id=organization_id, user_id=user_id, email=f"{user_id}@ganeshintnl.com")
        )

    def stored(self, provider_message_id: str) -> Message:
        return next(m for m in self.messages if m.provider_message_id == provider_message_id)

    # Database contract

    @contextmanager
    def mailbox_lock(self, key):
        yield

    def message_exists(self, key, provider_message_id):
        return any(
            m.key == key and m.provider_message_id == provider_message_id for m in self.messages
        )

    def existing_message_ids(self, key, provider_message_ids):
        wanted = set(provider_message_ids)
        return {m.provider_message_id for m in self.messages if m.key == key and m.provider_message_id in wanted}

    def insert_message(self, message):
        if message.provider_message_id in self.fail_insert_for:
            raise StorageFailure(f"insert failed for {message.provider_message_id}")

        with self._lock:
            for existing in self.messages:
                if existing.key == message.key and existing.provider_message_id == message.provider_message_id:
                    return replace(existing)

            row = replace(message, id=self._next_id)
            self._next_id += 1
            self.messages.append(row)
            return replace(row)

    def update_message_classification(self, message):
        for index, row in enumerate(self.messages):
            if row.id == message.id and row.outcome == MessageOutcome.STORED_UNCLASSIFIED:
                self.messages[index] = replace(
                    row,
                    matched_order_id=message.matched_order_id,
                    detected_stage=message.detected_stage,
                    ai_summary=message.ai_summary,
                    outcome=message.outcome,
                    rejection_reason=message.rejection_reason,
                    classified_at=message.classified_at,
                )
                return True
        return False

    def get_unclassified_messages(self, key, limit=20):
        return [
            replace(m) for m in self.messages
            if m.key == key and m.outcome == MessageOutcome.STORED_UNCLASSIFIED
        ][:limit]

    def get_correction_examples(self, organization_id, limit=10):
        return self.corrections[:limit]

    def get_open_orders(self, organization_id):
        return [
            replace(order) for (org, _), order in sorted(self.orders.items())
            if org == organization_id and order.current_stage < 8
        ]

    def advance_order_stage(self, message, order_id, from_stage, to_stage, rationale, pi_number=None):
        self.advance_calls.append((order_id, from_stage, to_stage))
        order = self.orders.get((message.organization_id, order_id))
        if order is None or order.current_stage != from_stage or order.current_stage >= 8:
            return None

        order.current_stage = to_stage
        if pi_number:
            self.pi_numbers[(message.organization_id, order_id)] = pi_number

        entry = HistoryEntry(
            organization_id=message.organization_id,
            order_id=order_id,
            stage=to_stage,
            sender=message.sender,
            subject=f"Auto-advanced: {message.subject}",
            body=rationale,
            timestamp=message.message_date,
            automatic=True,
            has_attachment=message.has_attachment,
            message_id=message.id,
            id=len(self.history) + 1,
        )
        self.history.append(entry)

        for index, row in enumerate(self.messages):
            if row.id == message.id:
                self.messages[index] = replace(
                    row,
                    auto_advanced=True,
                    outcome=MessageOutcome.ADVANCE_APPLIED,
                    rejection_reason=None,
                    matched_order_id=order_id,
                    detected_stage=to_stage,
                    ai_summary=rationale,
                )
        return entry

    def get_order_history(self, organization_id, order_id):
        return [h for h in self.history if h.organization_id == organization_id and h.order_id == order_id]

    def get_watermark(self, key):
        return self.watermarks.get(key)

    def set_watermark(self, key, timestamp):
        self.watermarks[key] = timestamp

    def list_members(self, organization_id):
        return list(self.members.get(organization_id, []))

    def insert_notification(self, notification):
        if notification.user_id in self.fail_notification_for:
            raise StorageFailure(f"notification insert failed for {notification.user_id}")
        self.notifications.append(notification)
        return len(self.notifications)

    def get_stats(self, organization_id=None):
        rows = [m for m in self.messages if organization_id is None or m.organization_id == organization_id]
        return {
            "total": len(rows),
            "unclassified": sum(m.outcome == MessageOutcome.STORED_UNCLASSIFIED for m in rows),
            "unmatched": sum(m.outcome == MessageOutcome.NO_MATCH for m in rows),
            "matched": sum(m.matched_order_id is not None for m in rows),
            "advanced": sum(m.outcome == MessageOutcome.ADVANCE_APPLIED for m in rows),
            "rejected": sum(m.outcome == MessageOutcome.ADVANCE_REJECTED for m in rows),
        }


class FakeMailbox(MailboxSource):
    """Mailbox source serving prepared messages."""

    def __init__(self, messages=(), key=KEY, fail_ids=(), auth_error=False):
        super().__init__(key)
        self.messages = {m.provider_message_id: m for m in messages}
        self.fail_ids = set(fail_ids)
        self.auth_error = auth_error
        self.list_calls = []
        self.fetch_calls = []
        self.closed = False

    def open(self):
        if self.auth_error:
            raise AuthenticationFailure("invalid credentials")

    def close(self):
        self.closed = True

    def list_message_ids(self, since):
        self.list_calls.append(since)
        return list(self.messages)

    def fetch_message(self, provider_message_id):
        self.fetch_calls.append(provider_message_id)
        if provider_message_id in self.fail_ids:
            raise MailboxUnavailable(f"timeout fetching {provider_message_id}")
        return replace(self.messages[provider_message_id])


class FakeBackend(BaseClassifier):
    """Matching backend returning canned verdicts."""

    def __init__(self, verdicts=None, error=None):
        self.verdicts = verdicts if verdicts is not None else []
        self.error = error
        self.calls = []

    def match(self, messages, open_orders, corrections):
        self.calls.append((list(messages), list(open_orders), list(corrections)))
        if self.error:
            raise self.error
        if callable(self.verdicts):
            return self.verdicts(messages)
        return self.verdicts


def make_message(provider_message_id: str, subject: str = "", body: str = "", **fields) -> Message:
    """Mail item as a provider would return it."""
    defaults = {
        "organization_id": ORG,
        "mailbox": MAILBOX,
        "sender": "JJ Seafoods <sales@jjseafoods.in>",
        "recipient": MAILBOX,
        "message_date": datetime(2026, 2, 28, 9, 0, 0, tzinfo=timezone.utc),
    }
    defaults.update(fields)
    return Message(provider_message_id=provider_message_id, subject=subject, body=body, **defaults)


def verdict(message_id: str, order_id: str | None, stage: int | None, summary: str | None = None) -> dict:
    """Raw classifier verdict item."""
    return {
        "message_id": message_id,
        "matched_order_id": order_id,
        "detected_stage": stage,
        "summary": f"Email {message_id}" if summary is None else summary,
    }



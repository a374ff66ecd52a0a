"""
Data models for order stage sync.

Uses dataclasses for clean, typed data structures.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from email.utils import parseaddr
from enum import Enum
from typing import Any

NO_MATCH_SUMMARY = "No order match found"


class MessageOutcome(str, Enum):
    """Where a stored message ended up in the sync state machine."""

    STORED_UNCLASSIFIED = "stored_unclassified"
    NO_MATCH = "no_match"
    ADVANCE_APPLIED = "advance_applied"
    ADVANCE_REJECTED = "advance_rejected"


class RejectionReason(str, Enum):
    """Why a proposed stage transition was not applied."""

    NO_STAGE = "no_stage_proposed"
    UNKNOWN_ORDER = "unknown_order"
    TERMINAL_STAGE = "order_at_terminal_stage"
    NOT_SINGLE_STEP = "not_single_step"
    ALREADY_ADVANCED = "already_advanced_this_cycle"
    STALE = "stage_changed_concurrently"


@dataclass(frozen=True)
class MailboxKey:
    """Identity of one synchronized mailbox."""

    organization_id: str
    mailbox: str

    def __str__(self) -> str:
        return f"{self.organization_id}:{self.mailbox}"


@dataclass
class Message:
    """One ingested mail item."""

    id: int | None = None
    organization_id: str = ""
    mailbox: str = ""
    provider_message_id: str = ""
    sender: str = ""
    recipient: str = ""
    subject: str = ""
    body: str = ""
    message_date: datetime | None = None
    has_attachment: bool = False

    # Classification outcome
    matched_order_id: str | None = None
    detected_stage: int | None = None
    ai_summary: str | None = None
    auto_advanced: bool = False
    outcome: MessageOutcome = MessageOutcome.STORED_UNCLASSIFIED
    rejection_reason: str | None = None
    classified_at: datetime | None = None
    user_linked_order_id: str | None = None

    @property
    def key(self) -> MailboxKey:
        return MailboxKey(self.organization_id, self.mailbox)

    @property
    def sender_email(self) -> str:
        """Extract email address from sender header."""
        return self._extract_email(self.sender)

    @property
    def sender_name(self) -> str:
        """Display name from the sender header, falling back to the local part."""
        name, address = parseaddr(self.sender or "")
        if name:
            return name.strip()
        return (address or self.sender or "").split("@")[0]

    @property
    def recipient_email(self) -> str:
        """Extract email address from recipient header."""
        return self._extract_email(self.recipient)

    @property
    def is_classified(self) -> bool:
        return self.outcome != MessageOutcome.STORED_UNCLASSIFIED

    def truncate_body(self, cap: int) -> None:
        """Cap the stored body length."""
        if self.body and len(self.body) > cap:
            self.body = self.body[:cap]

    @staticmethod
    def _extract_email(header: str) -> str:
        """Extract email address from header like 'Name <email@example.com>'."""
        if not header:
            return ""
        _, email = parseaddr(header)
        return email.lower() if email else ""

    @staticmethod
    def strip_html(html: str) -> str:
        """Strip HTML tags from text."""
        if not html:
            return ""
        text = re.sub(r"<[^>]+>", " ", html)
        return re.sub(r"\s+", " ", text).strip()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "mailbox": self.mailbox,
            "provider_message_id": self.provider_message_id,
            "from_email": self.sender_email,
            "from_name": self.sender_name,
            "to_email": self.recipient_email,
            "subject": self.subject,
            "date": self.message_date.isoformat() if self.message_date else None,
            "has_attachment": self.has_attachment,
            "matched_order_id": self.matched_order_id,
            "detected_stage": self.detected_stage,
            "ai_summary": self.ai_summary,
            "auto_advanced": self.auto_advanced,
            "outcome": self.outcome.value,
            "rejection_reason": self.rejection_reason,
        }


@dataclass
class OrderSummary:
    """Open order context handed to the classifier."""

    order_id: str
    current_stage: int
    company: str = ""
    supplier: str = ""
    product: str = ""
    specs: str = ""
    from_location: str = ""
    to_location: str = ""

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "id": self.order_id,
            "company": self.company,
            "supplier": self.supplier,
            "product": self.product,
            "specs": self.specs,
            "route": f"{self.from_location} -> {self.to_location}".strip(" ->"),
            "currentStage": self.current_stage,
        }


@dataclass
class MatchVerdict:
    """The classifier's proposed match for one message."""

    provider_message_id: str
    matched_order_id: str | None = None
    proposed_stage: int | None = None
    rationale: str = ""

    @property
    def is_match(self) -> bool:
        return bool(self.matched_order_id)

    @classmethod
    def empty(cls, provider_message_id: str) -> "MatchVerdict":
        return cls(provider_message_id=provider_message_id, rationale=NO_MATCH_SUMMARY)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchVerdict":
        """Create a verdict from a classifier response item."""
        stage = data.get("detected_stage")
        if isinstance(stage, str) and stage.strip().isdigit():
            stage = int(stage.strip())
        if isinstance(stage, bool) or not isinstance(stage, int) or not 1 <= stage <= 8:
            stage = None

        order_id = data.get("matched_order_id")
        if isinstance(order_id, str):
            order_id = order_id.strip()
            if order_id.lower() in ("", "null", "none"):
                order_id = None
        elif order_id is not None:
            order_id = str(order_id)

        return cls(
            provider_message_id=str(data.get("message_id", "")),
            matched_order_id=order_id,
            proposed_stage=stage,
            rationale=data.get("summary") or (NO_MATCH_SUMMARY if not order_id else ""),
        )


@dataclass
class CorrectionExample:
    """A message a user manually linked to an order."""

    subject: str
    sender_email: str
    order_id: str
    company: str = ""
    product: str = ""


@dataclass
class HistoryEntry:
    """Append-only audit record of a stage transition."""

    organization_id: str
    order_id: str
    stage: int
    sender: str = ""
    subject: str = ""
    body: str = ""
    timestamp: datetime | None = None
    automatic: bool = True
    has_attachment: bool = False
    message_id: int | None = None
    id: int | None = None


@dataclass
class Member:
    """Organization member from the member directory."""

    organization_id: str
    user_id: str
    email: str = ""
    name: str = ""


@dataclass
class Notification:
    """One in-app notification for one member."""

    organization_id: str
    user_id: str
    type: str
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    read: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AppliedAdvance:
    """A stage advance applied during a sync cycle."""

    order_id: str
    from_stage: int
    to_stage: int
    rationale: str
    provider_message_id: str


@dataclass
class SyncResult:
    """Externally observable summary of one sync cycle."""

    organization_id: str
    mailbox: str
    window_start: datetime | None = None
    window_end: datetime | None = None
    listed: int = 0
    deduplicated: int = 0
    fetched: int = 0
    ingested: int = 0
    advanced: int = 0
    rejected: int = 0
    unmatched: int = 0
    reclassified: int = 0
    fetch_failures: int = 0
    storage_failures: int = 0
    notification_failures: int = 0
    deferred: int = 0
    classification_available: bool = True
    watermark_committed: bool = False
    advances: list[AppliedAdvance] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for API responses and logs."""
        return {
            "organization_id": self.organization_id,
            "mailbox": self.mailbox,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "listed": self.listed,
            "deduplicated": self.deduplicated,
            "fetched": self.fetched,
            "ingested": self.ingested,
            "advanced": self.advanced,
            "rejected": self.rejected,
            "unmatched": self.unmatched,
            "reclassified": self.reclassified,
            "fetch_failures": self.fetch_failures,
            "storage_failures": self.storage_failures,
            "notification_failures": self.notification_failures,
            "deferred": self.deferred,
            "classification_available": self.classification_available,
            "watermark_committed": self.watermark_committed,
            "advances": [asdict(advance) for advance in self.advances],
            "messages": [message.to_dict() for message in self.messages],
        }

    def log_fields(self) -> dict[str, Any]:
        """Counters only, for structured log lines."""
        data = self.to_dict()
        data.pop("advances")
        data.pop("messages")
        return data

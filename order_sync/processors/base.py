"""
Shared verdict handling for the sync and reclassification processors.

Transition legality is decided here from the open-order snapshot, never
taken from the classifier.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Generator

from order_sync.config import settings
from order_sync.core.database import Database
from order_sync.core.exceptions import StorageFailure, StorageUnavailable
from order_sync.core.locks import mailbox_lock
from order_sync.core.logging import get_logger
from order_sync.core.models import (
    AppliedAdvance,
    CorrectionExample,
    MailboxKey,
    MatchVerdict,
    Message,
    MessageOutcome,
    OrderSummary,
    RejectionReason,
    SyncResult,
)
from order_sync.core.stages import FIRST_STAGE, is_terminal, is_valid_advance
from order_sync.classifiers.gateway import ClassifierGateway
from order_sync.services.notifications import NotificationFanout
from order_sync.services.pi_number import extract_pi_number
from order_sync.services.watermark import utcnow

log = get_logger(__name__)

PROFORMA_STAGE = FIRST_STAGE + 1


class BaseProcessor(ABC):
    """Abstract processor over one mailbox."""

    def __init__(
        self,
        db: Database | None = None,
        gateway: ClassifierGateway | None = None,
        notifier: NotificationFanout | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db or Database()
        if gateway is None:
            from order_sync.classifiers import get_gateway

            gateway = get_gateway()
        self.gateway = gateway
        self.notifier = notifier or NotificationFanout(self.db)
        self.clock = clock

    @abstractmethod
    def process(self, key: MailboxKey) -> SyncResult:
        """
        Run one pass over a mailbox.

        Returns:
            SyncResult summary
        """
        pass

    @abstractmethod
    def _persist_outcome(self, message: Message) -> Message:
        """Store a message whose outcome is final."""

    @abstractmethod
    def _persist_pending(self, message: Message) -> Message | None:
        """
        Make a message durable before its advance transaction runs.

        Returns None if the message turned out to be handled already.
        """

    @contextmanager
    def locked(self, key: MailboxKey) -> Generator[None, None, None]:
        """Exclusive access to a mailbox across threads and processes."""
        with mailbox_lock(key):
            with self.db.mailbox_lock(key):
                yield

    def _open_order_snapshot(self, organization_id: str) -> dict[str, OrderSummary]:
        orders = self.db.get_open_orders(organization_id)
        return {order.order_id: order for order in orders}

    def _correction_examples(self, organization_id: str) -> list[CorrectionExample]:
        """Recent manual links; a failed read only costs the examples."""
        try:
            return self.db.get_correction_examples(
                organization_id, settings.correction_examples_limit
            )
        except StorageUnavailable:
            raise
        except StorageFailure as e:
            log.warning("correction_examples_unavailable", error=str(e))
            return []

    @staticmethod
    def rejection_reason(
        verdict: MatchVerdict,
        snapshot: dict[str, OrderSummary],
        advanced: set[str],
    ) -> RejectionReason | None:
        """Why a matched verdict cannot be applied, or None if it can."""
        if verdict.proposed_stage is None:
            return RejectionReason.NO_STAGE

        order = snapshot.get(verdict.matched_order_id)
        if order is None:
            return RejectionReason.UNKNOWN_ORDER
        if is_terminal(order.current_stage):
            return RejectionReason.TERMINAL_STAGE
        if verdict.matched_order_id in advanced:
            return RejectionReason.ALREADY_ADVANCED
        if not is_valid_advance(order.current_stage, verdict.proposed_stage):
            return RejectionReason.NOT_SINGLE_STEP
        return None

    def _apply_verdict(
        self,
        message: Message,
        verdict: MatchVerdict,
        snapshot: dict[str, OrderSummary],
        advanced: set[str],
        result: SyncResult,
    ) -> Message | None:
        """
        Record a verdict on a message and apply at most one stage advance.

        Returns:
            The stored message, or None if it had already been handled
        """
        message.matched_order_id = verdict.matched_order_id
        message.detected_stage = verdict.proposed_stage
        message.ai_summary = verdict.rationale
        message.classified_at = self.clock()

        if not verdict.is_match:
            message.outcome = MessageOutcome.NO_MATCH
            result.unmatched += 1
            return self._persist_outcome(message)

        reason = self.rejection_reason(verdict, snapshot, advanced)
        if reason is not None:
            return self._reject(message, verdict, reason, snapshot, result)

        stored = self._persist_pending(message)
        if stored is None:
            return None

        order = snapshot[verdict.matched_order_id]
        pi_number = None
        if verdict.proposed_stage == PROFORMA_STAGE:
            pi_number = extract_pi_number(stored.subject)

        entry = self.db.advance_order_stage(
            stored,
            order.order_id,
            order.current_stage,
            verdict.proposed_stage,
            verdict.rationale,
            pi_number=pi_number,
        )

        if entry is None:
            stored.outcome = MessageOutcome.ADVANCE_REJECTED
            stored.rejection_reason = RejectionReason.STALE.value
            self.db.update_message_classification(stored)
            result.rejected += 1
            log.info(
                "stage_advance_rejected",
                order_id=order.order_id,
                current_stage=order.current_stage,
                proposed_stage=verdict.proposed_stage,
                reason=RejectionReason.STALE.value,
                rationale=verdict.rationale,
            )
            return stored

        advanced.add(order.order_id)
        stored.outcome = MessageOutcome.ADVANCE_APPLIED
        stored.auto_advanced = True
        result.advanced += 1
        result.advances.append(AppliedAdvance(
            order_id=order.order_id,
            from_stage=order.current_stage,
            to_stage=verdict.proposed_stage,
            rationale=verdict.rationale,
            provider_message_id=stored.provider_message_id,
        ))
        log.info(
            "stage_advanced",
            order_id=order.order_id,
            from_stage=order.current_stage,
            to_stage=verdict.proposed_stage,
            pi_number=pi_number,
        )
        return stored

    def _reject(
        self,
        message: Message,
        verdict: MatchVerdict,
        reason: RejectionReason,
        snapshot: dict[str, OrderSummary],
        result: SyncResult,
    ) -> Message:
        order = snapshot.get(verdict.matched_order_id)
        message.outcome = MessageOutcome.ADVANCE_REJECTED
        message.rejection_reason = reason.value
        result.rejected += 1
        log.info(
            "stage_advance_rejected",
            order_id=verdict.matched_order_id,
            current_stage=order.current_stage if order else None,
            proposed_stage=verdict.proposed_stage,
            reason=reason.value,
            rationale=verdict.rationale,
        )
        return self._persist_outcome(message)

    def _notify_advances(self, result: SyncResult) -> None:
        """Fan out one notification set per applied advance."""
        for advance in result.advances:
            _, failed = self.notifier.notify(
                result.organization_id,
                advance.order_id,
                advance.to_stage,
                advance.rationale,
            )
            result.notification_failures += failed

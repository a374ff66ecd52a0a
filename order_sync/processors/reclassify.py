"""
Reclassification pass for messages stored while the classifier was down.

Runs the same validation and compare-and-set rules as the live sync
cycle against a fresh open-order snapshot. Does NOT fetch from the
mailbox.

Usage:
    python -m order_sync.processors.reclassify --mailbox orders@example.com --limit 20
"""

import argparse

from order_sync.config import settings
from order_sync.core.exceptions import (
    ClassificationUnavailable,
    OrderSyncError,
    StorageFailure,
    StorageUnavailable,
)
from order_sync.core.logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from order_sync.core.models import MailboxKey, Message, SyncResult
from order_sync.processors.base import BaseProcessor

log = get_logger(__name__)


class ReclassifyProcessor(BaseProcessor):
    """
    Classify stored-unclassified messages for one mailbox.

    Messages are taken oldest first in batches; a batch that cannot be
    classified stops the pass and leaves the rest for next time.
    """

    def __init__(
        self,
        db=None,
        gateway=None,
        notifier=None,
        clock=None,
        dry_run: bool = False,
        limit: int | None = None,
    ):
        kwargs = {"clock": clock} if clock else {}
        super().__init__(db=db, gateway=gateway, notifier=notifier, **kwargs)
        self.dry_run = dry_run
        self.limit = limit or settings.reclassify_batch_size

    def process(self, key: MailboxKey) -> SyncResult:
        """Reclassify one mailbox under its lock, then notify advances."""
        result = SyncResult(organization_id=key.organization_id, mailbox=key.mailbox)
        with self.locked(key):
            bind_context(mailbox=str(key))
            try:
                self.reclassify_locked(key, set(), result)
                if not self.dry_run:
                    self._notify_advances(result)
            finally:
                clear_context()

        log.info("reclassify_complete", **result.log_fields())
        return result

    def reclassify_locked(self, key: MailboxKey, advanced: set[str], result: SyncResult) -> None:
        """
        Reclassify one batch. The caller must hold the mailbox lock.

        Args:
            key: Mailbox to reclassify
            advanced: Orders already advanced in the running cycle
            result: Summary updated in place
        """
        messages = self.db.get_unclassified_messages(key, limit=self.limit)
        if not messages:
            return

        snapshot = self._open_order_snapshot(key.organization_id)
        corrections = self._correction_examples(key.organization_id)

        try:
            verdicts = self.gateway.classify(messages, list(snapshot.values()), corrections)
        except ClassificationUnavailable as e:
            log.warning("reclassify_classifier_unavailable", error=str(e), pending=len(messages))
            result.classification_available = False
            return

        for message, verdict in zip(messages, verdicts):
            bind_context(provider_message_id=message.provider_message_id)
            try:
                if self.dry_run:
                    reason = self.rejection_reason(verdict, snapshot, advanced) if verdict.is_match else None
                    log.info(
                        "dry_run_verdict",
                        matched_order_id=verdict.matched_order_id,
                        proposed_stage=verdict.proposed_stage,
                        rejection_reason=reason.value if reason else None,
                        summary=verdict.rationale,
                    )
                    continue

                stored = self._apply_verdict(message, verdict, snapshot, advanced, result)
                if stored is not None:
                    result.reclassified += 1
                    result.messages.append(stored)
            except StorageUnavailable:
                raise
            except StorageFailure as e:
                log.error("reclassify_store_failed", message_id=message.id, error=str(e))
            finally:
                unbind_context("provider_message_id")

    def _persist_outcome(self, message: Message) -> Message:
        if not self.db.update_message_classification(message):
            log.info("message_already_classified", message_id=message.id)
        return message

    def _persist_pending(self, message: Message) -> Message | None:
        # Already durable as stored_unclassified
        return message


def main():
    """CLI entry point for reclassification."""
    parser = argparse.ArgumentParser(
        description="Classify messages stored while the classifier was unavailable"
    )
    parser.add_argument(
        "--mailbox",
        type=str,
        help="Mailbox address (default: every configured mailbox)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help=f"Maximum messages per mailbox (default: {settings.reclassify_batch_size})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Classify and log verdicts without writing anything",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args()

    configure_logging(log_level=args.log_level, json_output=settings.json_logs)

    keys = [
        MailboxKey(account.organization_id, account.address)
        for account in settings.mailbox_accounts()
        if not args.mailbox or account.address == args.mailbox
    ]
    if not keys:
        log.error("no_mailbox_configured", mailbox=args.mailbox)
        return

    processor = ReclassifyProcessor(dry_run=args.dry_run, limit=args.limit)

    for key in keys:
        try:
            result = processor.process(key)
        except OrderSyncError as e:
            log.error("reclassify_failed", mailbox=str(key), error=str(e))
            continue

        log.info(
            "reclassify_summary",
            mailbox=str(key),
            reclassified=result.reclassified,
            advanced=result.advanced,
            rejected=result.rejected,
            unmatched=result.unmatched,
            dry_run=args.dry_run,
        )


if __name__ == "__main__":
    main()

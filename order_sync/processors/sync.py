"""
Sync processor: one ingestion, classification and advancement cycle per mailbox.

Cycle:
1. List provider ids since the mailbox watermark, drop ids already stored
2. Fetch the remaining messages (bounded, with retries)
3. Classify the batch once against the open-order snapshot
4. Store each message and apply at most one advance per order
5. Notify members of applied advances, then commit the watermark

Run directly for every configured mailbox:
    python -m order_sync.processors.sync
"""

import argparse
import time
from datetime import datetime
from typing import Callable

from order_sync.config import MailboxAccount, settings
from order_sync.core.database import Database
from order_sync.core.exceptions import (
    AuthenticationFailure,
    ClassificationUnavailable,
    MailboxUnavailable,
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
from order_sync.core.models import (
    MailboxKey,
    Message,
    MessageOutcome,
    SyncResult,
)
from order_sync.classifiers.gateway import ClassifierGateway
from order_sync.processors.base import BaseProcessor
from order_sync.processors.reclassify import ReclassifyProcessor
from order_sync.services.mailbox import MailboxSource, get_mailbox_source
from order_sync.services.message_store import MessageStore
from order_sync.services.notifications import NotificationFanout
from order_sync.services.watermark import WatermarkTracker, utcnow

log = get_logger(__name__)


class SyncProcessor(BaseProcessor):
    """Synchronize one mailbox at a time against the order tracker."""

    def __init__(
        self,
        db: Database | None = None,
        gateway: ClassifierGateway | None = None,
        notifier: NotificationFanout | None = None,
        source_factory: Callable[[MailboxAccount], MailboxSource] = get_mailbox_source,
        clock: Callable[[], datetime] = utcnow,
        max_messages: int | None = None,
        fetch_retries: int | None = None,
        retry_delay: float | None = None,
        reclassify_on_sync: bool | None = None,
    ):
        super().__init__(db=db, gateway=gateway, notifier=notifier, clock=clock)
        self.store = MessageStore(self.db)
        self.watermarks = WatermarkTracker(self.db, clock=clock)
        self.source_factory = source_factory
        self.max_messages = max_messages or settings.sync_max_messages
        self.fetch_retries = fetch_retries if fetch_retries is not None else settings.fetch_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.fetch_retry_delay_seconds
        self.reclassify_on_sync = (
            reclassify_on_sync if reclassify_on_sync is not None else settings.reclassify_on_sync
        )

    def process(self, key: MailboxKey) -> SyncResult:
        """Sync a configured mailbox by key."""
        for account in settings.mailbox_accounts():
            if MailboxKey(account.organization_id, account.address) == key:
                return self.sync_account(account)
        raise MailboxUnavailable(f"No mailbox configured for {key}")

    def sync_account(self, account: MailboxAccount) -> SyncResult:
        """Run one cycle for a configured mailbox account."""
        return self.sync_source(self.source_factory(account))

    def sync_source(self, source: MailboxSource) -> SyncResult:
        """
        Run one cycle for a mailbox source.

        Blocks while another cycle for the same mailbox holds the lock.

        Raises:
            AuthenticationFailure: mailbox credentials rejected
            MailboxUnavailable: the provider could not be listed
            StorageUnavailable: the database cannot be reached
        """
        key = source.key
        with self.locked(key):
            bind_context(mailbox=str(key))
            try:
                return self._run_cycle(source)
            finally:
                clear_context()

    def _run_cycle(self, source: MailboxSource) -> SyncResult:
        key = source.key
        result = SyncResult(organization_id=key.organization_id, mailbox=key.mailbox)
        result.window_start = self.watermarks.get_window_start(key)
        result.window_end = self.clock()

        log.info("sync_cycle_starting", window_start=result.window_start.isoformat())

        with source:
            listed = source.list_message_ids(result.window_start)
            result.listed = len(listed)

            fresh = self.store.new_ids(key, listed)
            result.deduplicated = len(listed) - len(fresh)

            if len(fresh) > self.max_messages:
                result.deferred = len(fresh) - self.max_messages
                fresh = fresh[:self.max_messages]
                log.info("sync_messages_deferred", count=result.deferred)

            messages = self._fetch_all(source, fresh, result)

        advanced: set[str] = set()
        if messages:
            self._classify_and_store(key, messages, result, advanced)

        if self.reclassify_on_sync and result.classification_available:
            reclassifier = ReclassifyProcessor(
                db=self.db, gateway=self.gateway, notifier=self.notifier, clock=self.clock
            )
            reclassifier.reclassify_locked(key, advanced, result)

        self._notify_advances(result)

        if result.fetch_failures or result.storage_failures or result.deferred:
            log.warning(
                "watermark_held_back",
                fetch_failures=result.fetch_failures,
                storage_failures=result.storage_failures,
                deferred=result.deferred,
            )
        else:
            self.watermarks.commit(key, result.window_end)
            result.watermark_committed = True

        log.info("sync_cycle_complete", **result.log_fields())
        return result

    def _fetch_all(
        self,
        source: MailboxSource,
        provider_ids: list[str],
        result: SyncResult,
    ) -> list[Message]:
        messages = []
        for provider_id in provider_ids:
            message = self._fetch_with_retry(source, provider_id)
            if message is None:
                result.fetch_failures += 1
                continue
            message.truncate_body(settings.message_body_cap)
            messages.append(message)

        result.fetched = len(messages)
        log.info("sync_messages_fetched", count=result.fetched, failures=result.fetch_failures)
        return messages

    def _fetch_with_retry(self, source: MailboxSource, provider_id: str) -> Message | None:
        """Fetch one message with exponential backoff.

        Returns None once retries are exhausted; the message is listed
        again next cycle because the watermark is held back.
        """
        for attempt in range(self.fetch_retries + 1):
            try:
                return source.fetch_message(provider_id)
            except MailboxUnavailable as e:
                if attempt < self.fetch_retries:
                    wait_time = self.retry_delay * (2 ** attempt)
                    log.warning(
                        "fetch_failed_retrying",
                        provider_message_id=provider_id,
                        attempt=attempt + 1,
                        max_retries=self.fetch_retries,
                        wait_seconds=wait_time,
                        error=str(e),
                    )
                    time.sleep(wait_time)
                else:
                    log.error("fetch_failed", provider_message_id=provider_id, error=str(e))
        return None

    def _classify_and_store(
        self,
        key: MailboxKey,
        messages: list[Message],
        result: SyncResult,
        advanced: set[str],
    ) -> None:
        snapshot = self._open_order_snapshot(key.organization_id)
        corrections = self._correction_examples(key.organization_id)

        try:
            verdicts = self.gateway.classify(messages, list(snapshot.values()), corrections)
        except ClassificationUnavailable as e:
            log.warning("classification_unavailable_ingesting_only", error=str(e))
            result.classification_available = False
            for message in messages:
                self._store_message(message, result, self._store_unclassified)
            return

        for message, verdict in zip(messages, verdicts):
            self._store_message(
                message,
                result,
                lambda m, v=verdict: self._apply_verdict(m, v, snapshot, advanced, result),
            )

    def _store_unclassified(self, message: Message) -> Message:
        message.outcome = MessageOutcome.STORED_UNCLASSIFIED
        return self.store.insert(message)

    def _store_message(
        self,
        message: Message,
        result: SyncResult,
        handler: Callable[[Message], Message | None],
    ) -> None:
        """Run a per-message step; one failed write never aborts the batch."""
        bind_context(provider_message_id=message.provider_message_id)
        try:
            stored = handler(message)
            if stored is not None:
                result.ingested += 1
                result.messages.append(stored)
        except StorageUnavailable:
            raise
        except StorageFailure as e:
            result.storage_failures += 1
            log.error("message_store_failed", error=str(e))
        finally:
            unbind_context("provider_message_id")

    def _persist_outcome(self, message: Message) -> Message:
        return self.store.insert(message)

    def _persist_pending(self, message: Message) -> Message | None:
        stored = self.store.insert(message)
        if stored.is_classified or stored.auto_advanced:
            log.info("message_already_handled", message_id=stored.id)
            return None
        return stored


def sync_all(processor: SyncProcessor | None = None) -> list[SyncResult]:
    """Run one cycle for every configured mailbox, in sequence."""
    processor = processor or SyncProcessor()
    results = []
    for account in settings.mailbox_accounts():
        try:
            results.append(processor.sync_account(account))
        except (AuthenticationFailure, MailboxUnavailable) as e:
            log.error(
                "mailbox_sync_failed",
                mailbox=account.address,
                organization_id=account.organization_id,
                error=str(e),
            )
    return results


def run():
    """CLI entry point for a single sync cycle."""
    parser = argparse.ArgumentParser(
        description="Sync configured mailboxes once and advance matched orders"
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args()

    configure_logging(log_level=args.log_level, json_output=settings.json_logs)

    try:
        results = sync_all()
    except OrderSyncError as e:
        log.error("sync_aborted", error=str(e))
        raise SystemExit(1)

    log.info(
        "sync_summary",
        mailboxes=len(results),
        advanced=sum(r.advanced for r in results),
        ingested=sum(r.ingested for r in results),
    )


if __name__ == "__main__":
    run()

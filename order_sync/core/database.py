"""
Database repository for orders, synced messages, history and watermarks.

Provides PostgreSQL operations for the sync pipeline. Every call opens a
short-lived connection; the stage advance runs in a single transaction.
"""

import hashlib
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from order_sync.config import settings
from order_sync.core.exceptions import StorageFailure, StorageUnavailable
from order_sync.core.logging import get_logger
from order_sync.core.models import (
    CorrectionExample,
    HistoryEntry,
    MailboxKey,
    Member,
    Message,
    MessageOutcome,
    Notification,
    OrderSummary,
)
from order_sync.core.stages import TERMINAL_STAGE

log = get_logger(__name__)

MESSAGE_COLUMNS = """
    id, organization_id, mailbox, provider_message_id, sender, to_email, subject,
    body_text, message_date, has_attachment, matched_order_id, detected_stage,
    ai_summary, auto_advanced, outcome, rejection_reason, classified_at,
    user_linked_order_id
"""


def advisory_lock_id(key: MailboxKey) -> int:
    """Stable signed 64-bit lock id for a mailbox key."""
    digest = hashlib.sha256(str(key).encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class Database:
    """PostgreSQL database operations for the sync pipeline."""

    def __init__(self, connection_string: str | None = None):
        """
        Initialize database connection.

        Args:
            connection_string: PostgreSQL connection URL. Uses settings if not provided.
        """
        self.connection_string = connection_string or settings.database_url

    @contextmanager
    def get_connection(self) -> Generator[psycopg.Connection, None, None]:
        """Get a database connection as a context manager."""
        try:
            conn = psycopg.connect(self.connection_string, row_factory=dict_row)
        except psycopg.OperationalError as e:
            log.error("database_unavailable", error=str(e))
            raise StorageUnavailable(f"Database unavailable: {e}") from e

        try:
            yield conn
        except psycopg.OperationalError as e:
            log.error("database_connection_lost", error=str(e))
            raise StorageUnavailable(f"Database connection lost: {e}") from e
        except psycopg.Error as e:
            log.error("database_error", error=str(e))
            raise StorageFailure(str(e)) from e
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Initialize database schema (create tables if not exist)."""
        schema_sql = """
        -- orders: written by the order-entry workflow, stage advanced by sync
        CREATE TABLE IF NOT EXISTS orders (
            id SERIAL PRIMARY KEY,
            organization_id VARCHAR(64) NOT NULL,
            order_id VARCHAR(100) NOT NULL,
            pi_number VARCHAR(100),
            company TEXT,
            supplier TEXT,
            product TEXT,
            specs TEXT,
            from_location TEXT,
            to_location TEXT,
            current_stage INTEGER NOT NULL DEFAULT 1
                CHECK (current_stage BETWEEN 1 AND 8),
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (organization_id, order_id)
        );

        CREATE INDEX IF NOT EXISTS idx_orders_open ON orders(organization_id, current_stage);

        -- synced_messages: one row per provider message per mailbox
        CREATE TABLE IF NOT EXISTS synced_messages (
            id SERIAL PRIMARY KEY,
            organization_id VARCHAR(64) NOT NULL,
            mailbox VARCHAR(255) NOT NULL,
            provider_message_id VARCHAR(255) NOT NULL,
            sender TEXT,
            from_email VARCHAR(255),
            from_name VARCHAR(255),
            to_email VARCHAR(255),
            subject TEXT,
            body_text TEXT,
            message_date TIMESTAMPTZ,
            has_attachment BOOLEAN DEFAULT FALSE,
            fetched_at TIMESTAMPTZ DEFAULT NOW(),

            -- Classification outcome
            matched_order_id VARCHAR(100),
            detected_stage INTEGER,
            ai_summary TEXT,
            auto_advanced BOOLEAN DEFAULT FALSE,
            outcome VARCHAR(32) NOT NULL DEFAULT 'stored_unclassified',
            rejection_reason VARCHAR(64),
            classified_at TIMESTAMPTZ,

            -- Manual links made in the UI
            user_linked_order_id VARCHAR(100),
            user_linked_at TIMESTAMPTZ,

            UNIQUE (organization_id, mailbox, provider_message_id)
        );

        CREATE INDEX IF NOT EXISTS idx_messages_outcome ON synced_messages(organization_id, mailbox, outcome);
        CREATE INDEX IF NOT EXISTS idx_messages_date ON synced_messages(message_date DESC);
        CREATE INDEX IF NOT EXISTS idx_messages_order ON synced_messages(matched_order_id);

        -- order_history: append-only audit trail of stage transitions
        CREATE TABLE IF NOT EXISTS order_history (
            id SERIAL PRIMARY KEY,
            organization_id VARCHAR(64) NOT NULL,
            order_id VARCHAR(100) NOT NULL,
            stage INTEGER NOT NULL,
            from_address TEXT,
            subject TEXT,
            body TEXT,
            timestamp TIMESTAMPTZ DEFAULT NOW(),
            automatic BOOLEAN DEFAULT FALSE,
            has_attachment BOOLEAN DEFAULT FALSE,
            message_id INTEGER REFERENCES synced_messages(id),
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_history_order ON order_history(organization_id, order_id);

        -- mailbox_watermarks: one sync cursor per mailbox
        CREATE TABLE IF NOT EXISTS mailbox_watermarks (
            organization_id VARCHAR(64) NOT NULL,
            mailbox VARCHAR(255) NOT NULL,
            last_synced_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            PRIMARY KEY (organization_id, mailbox)
        );

        -- organization_members: member directory
        CREATE TABLE IF NOT EXISTS organization_members (
            organization_id VARCHAR(64) NOT NULL,
            user_id VARCHAR(64) NOT NULL,
            email VARCHAR(255),
            name VARCHAR(255),
            PRIMARY KEY (organization_id, user_id)
        );

        -- notifications: one row per member per event
        CREATE TABLE IF NOT EXISTS notifications (
            id SERIAL PRIMARY KEY,
            organization_id VARCHAR(64) NOT NULL,
            user_id VARCHAR(64) NOT NULL,
            type VARCHAR(50) NOT NULL,
            title TEXT,
            message TEXT,
            data JSONB,
            read BOOLEAN DEFAULT FALSE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read);
        """

        with self.get_connection() as conn:
            conn.execute(schema_sql)
            conn.commit()
            log.info("database_schema_initialized")

    # ── Locking ─────────────────────────────────────────────────────

    @contextmanager
    def mailbox_lock(self, key: MailboxKey) -> Generator[None, None, None]:
        """
        Hold a session-level advisory lock for one mailbox.

        Blocks until any other process syncing the same mailbox releases it.
        """
        lock_id = advisory_lock_id(key)
        with self.get_connection() as conn:
            conn.autocommit = True
            conn.execute("SELECT pg_advisory_lock(%s)", (lock_id,))
            log.debug("mailbox_lock_acquired", mailbox=str(key))
            try:
                yield
            finally:
                try:
                    conn.execute("SELECT pg_advisory_unlock(%s)", (lock_id,))
                    log.debug("mailbox_lock_released", mailbox=str(key))
                except psycopg.OperationalError as e:
                    # Session locks are released when the connection drops
                    log.warning("mailbox_unlock_failed", mailbox=str(key), error=str(e))

    # ── Message store ───────────────────────────────────────────────

    def message_exists(self, key: MailboxKey, provider_message_id: str) -> bool:
        """Check if a message is already stored for this mailbox."""
        with self.get_connection() as conn:
            result = conn.execute(
                """
                SELECT 1 FROM synced_messages
                WHERE organization_id = %s AND mailbox = %s AND provider_message_id = %s
                LIMIT 1
                """,
                (key.organization_id, key.mailbox, provider_message_id),
            ).fetchone()
            return result is not None

    def existing_message_ids(self, key: MailboxKey, provider_message_ids: list[str]) -> set[str]:
        """Return the subset of provider ids already stored for this mailbox."""
        if not provider_message_ids:
            return set()

        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT provider_message_id FROM synced_messages
                WHERE organization_id = %s AND mailbox = %s
                  AND provider_message_id = ANY(%s)
                """,
                (key.organization_id, key.mailbox, list(provider_message_ids)),
            ).fetchall()
            return {row["provider_message_id"] for row in rows}

    def insert_message(self, message: Message) -> Message:
        """
        Insert a message record with its classification outcome.

        A conflicting insert for the same provider id returns the existing
        record unchanged.
        """
        sql = f"""
        INSERT INTO synced_messages (
            organization_id, mailbox, provider_message_id, sender, from_email, from_name,
            to_email, subject, body_text, message_date, has_attachment,
            matched_order_id, detected_stage, ai_summary, auto_advanced, outcome,
            rejection_reason, classified_at
        ) VALUES (
            %(organization_id)s, %(mailbox)s, %(provider_message_id)s, %(sender)s,
            %(from_email)s, %(from_name)s, %(to_email)s, %(subject)s, %(body_text)s,
            %(message_date)s, %(has_attachment)s, %(matched_order_id)s,
            %(detected_stage)s, %(ai_summary)s, %(auto_advanced)s, %(outcome)s,
            %(rejection_reason)s, %(classified_at)s
        )
        ON CONFLICT (organization_id, mailbox, provider_message_id) DO NOTHING
        RETURNING {MESSAGE_COLUMNS}
        """

        params = {
            "organization_id": message.organization_id,
            "mailbox": message.mailbox,
            "provider_message_id": message.provider_message_id,
            "sender": message.sender,
            "from_email": message.sender_email,
            "from_name": message.sender_name,
            "to_email": message.recipient_email or message.recipient,
            "subject": message.subject,
            "body_text": message.body,
            "message_date": message.message_date,
            "has_attachment": message.has_attachment,
            "matched_order_id": message.matched_order_id,
            "detected_stage": message.detected_stage,
            "ai_summary": message.ai_summary,
            "auto_advanced": message.auto_advanced,
            "outcome": message.outcome.value,
            "rejection_reason": message.rejection_reason,
            "classified_at": message.classified_at,
        }

        with self.get_connection() as conn:
            row = conn.execute(sql, params).fetchone()
            conn.commit()

            if row:
                log.info(
                    "message_inserted",
                    message_id=row["id"],
                    provider_message_id=message.provider_message_id,
                    outcome=message.outcome.value,
                )
                return self._row_to_message(row)

            # Already stored, return the existing record
            existing = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM synced_messages
                WHERE organization_id = %s AND mailbox = %s AND provider_message_id = %s
                """,
                (message.organization_id, message.mailbox, message.provider_message_id),
            ).fetchone()
            if not existing:
                raise StorageFailure(
                    f"Failed to insert or fetch message: {message.provider_message_id}"
                )
            log.info("message_already_stored", provider_message_id=message.provider_message_id)
            return self._row_to_message(existing)

    def update_message_classification(self, message: Message) -> bool:
        """
        Record a classification outcome on a stored-unclassified message.

        Returns False if the message was already classified.
        """
        sql = """
        UPDATE synced_messages
        SET matched_order_id = %s,
            detected_stage = %s,
            ai_summary = %s,
            outcome = %s,
            rejection_reason = %s,
            classified_at = %s
        WHERE id = %s AND outcome = %s
        """

        with self.get_connection() as conn:
            cursor = conn.execute(sql, (
                message.matched_order_id,
                message.detected_stage,
                message.ai_summary,
                message.outcome.value,
                message.rejection_reason,
                message.classified_at,
                message.id,
                MessageOutcome.STORED_UNCLASSIFIED.value,
            ))
            conn.commit()
            return cursor.rowcount == 1

    def get_unclassified_messages(self, key: MailboxKey, limit: int = 20) -> list[Message]:
        """Fetch messages stored while the classifier was unavailable, oldest first."""
        sql = f"""
        SELECT {MESSAGE_COLUMNS}
        FROM synced_messages
        WHERE organization_id = %s AND mailbox = %s AND outcome = %s
          AND user_linked_order_id IS NULL
        ORDER BY message_date ASC NULLS LAST, id ASC
        LIMIT %s
        """

        with self.get_connection() as conn:
            rows = conn.execute(sql, (
                key.organization_id,
                key.mailbox,
                MessageOutcome.STORED_UNCLASSIFIED.value,
                limit,
            )).fetchall()
            messages = [self._row_to_message(row) for row in rows]
            log.info("fetched_unclassified_messages", count=len(messages), mailbox=str(key))
            return messages

    def get_correction_examples(self, organization_id: str, limit: int = 10) -> list[CorrectionExample]:
        """Most recent messages a user linked to an order by hand."""
        sql = """
        SELECT m.subject, m.from_email, m.user_linked_order_id, o.company, o.product
        FROM synced_messages m
        LEFT JOIN orders o
          ON o.organization_id = m.organization_id AND o.order_id = m.user_linked_order_id
        WHERE m.organization_id = %s AND m.user_linked_at IS NOT NULL
        ORDER BY m.user_linked_at DESC
        LIMIT %s
        """

        with self.get_connection() as conn:
            rows = conn.execute(sql, (organization_id, limit)).fetchall()
            return [
                CorrectionExample(
                    subject=row["subject"] or "",
                    sender_email=row["from_email"] or "",
                    order_id=row["user_linked_order_id"],
                    company=row["company"] or "",
                    product=row["product"] or "",
                )
                for row in rows
            ]

    # ── Orders & history ────────────────────────────────────────────

    def get_open_orders(self, organization_id: str) -> list[OrderSummary]:
        """Snapshot of orders that can still advance."""
        sql = """
        SELECT order_id, company, supplier, product, specs, from_location,
               to_location, current_stage
        FROM orders
        WHERE organization_id = %s AND current_stage < %s
        ORDER BY order_id
        """

        with self.get_connection() as conn:
            rows = conn.execute(sql, (organization_id, TERMINAL_STAGE)).fetchall()
            return [
                OrderSummary(
                    order_id=row["order_id"],
                    current_stage=row["current_stage"],
                    company=row["company"] or "",
                    supplier=row["supplier"] or "",
                    product=row["product"] or "",
                    specs=row["specs"] or "",
                    from_location=row["from_location"] or "",
                    to_location=row["to_location"] or "",
                )
                for row in rows
            ]

    def advance_order_stage(
        self,
        message: Message,
        order_id: str,
        from_stage: int,
        to_stage: int,
        rationale: str,
        pi_number: str | None = None,
    ) -> HistoryEntry | None:
        """
        Advance one order by a single stage in one transaction.

        The update only applies while the stored stage still equals
        from_stage. On success a history entry is appended and the
        triggering message is marked auto-advanced.

        Returns:
            The appended HistoryEntry, or None if the stored stage had moved.
        """
        entry = HistoryEntry(
            organization_id=message.organization_id,
            order_id=order_id,
            stage=to_stage,
            sender=f"{message.sender_name} <{message.sender_email}>",
            subject=f"Auto-advanced: {message.subject}",
            body=rationale or f"Stage advanced based on email from {message.sender_name}",
            timestamp=message.message_date or datetime.now(timezone.utc),
            automatic=True,
            has_attachment=message.has_attachment,
            message_id=message.id,
        )

        with self.get_connection() as conn:
            with conn.transaction():
                updated = conn.execute(
                    """
                    UPDATE orders
                    SET current_stage = %s,
                        pi_number = COALESCE(%s, pi_number),
                        updated_at = NOW()
                    WHERE organization_id = %s AND order_id = %s
                      AND current_stage = %s AND current_stage < %s
                    RETURNING id
                    """,
                    (to_stage, pi_number, message.organization_id, order_id,
                     from_stage, TERMINAL_STAGE),
                ).fetchone()

                if not updated:
                    log.info(
                        "stage_compare_and_set_failed",
                        order_id=order_id,
                        expected_stage=from_stage,
                    )
                    return None

                row = conn.execute(
                    """
                    INSERT INTO order_history (
                        organization_id, order_id, stage, from_address, subject, body,
                        timestamp, automatic, has_attachment, message_id
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (entry.organization_id, entry.order_id, entry.stage, entry.sender,
                     entry.subject, entry.body, entry.timestamp, entry.automatic,
                     entry.has_attachment, entry.message_id),
                ).fetchone()
                entry.id = row["id"]

                conn.execute(
                    """
                    UPDATE synced_messages
                    SET auto_advanced = TRUE,
                        outcome = %s,
                        rejection_reason = NULL,
                        matched_order_id = %s,
                        detected_stage = %s,
                        ai_summary = %s,
                        classified_at = COALESCE(%s, NOW())
                    WHERE id = %s
                    """,
                    (MessageOutcome.ADVANCE_APPLIED.value, order_id, to_stage,
                     rationale, message.classified_at, message.id),
                )

        log.info("order_stage_advanced", order_id=order_id, from_stage=from_stage, to_stage=to_stage)
        return entry

    def get_order_history(self, organization_id: str, order_id: str) -> list[HistoryEntry]:
        """History Ledger entries for one order, oldest first."""
        sql = """
        SELECT id, organization_id, order_id, stage, from_address, subject, body,
               timestamp, automatic, has_attachment, message_id
        FROM order_history
        WHERE organization_id = %s AND order_id = %s
        ORDER BY timestamp ASC, id ASC
        """

        with self.get_connection() as conn:
            rows = conn.execute(sql, (organization_id, order_id)).fetchall()
            return [
                HistoryEntry(
                    id=row["id"],
                    organization_id=row["organization_id"],
                    order_id=row["order_id"],
                    stage=row["stage"],
                    sender=row["from_address"] or "",
                    subject=row["subject"] or "",
                    body=row["body"] or "",
                    timestamp=row["timestamp"],
                    automatic=row["automatic"],
                    has_attachment=row["has_attachment"],
                    message_id=row["message_id"],
                )
                for row in rows
            ]

    # ── Watermarks ──────────────────────────────────────────────────

    def get_watermark(self, key: MailboxKey) -> datetime | None:
        """Last successful sync time for a mailbox."""
        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT last_synced_at FROM mailbox_watermarks
                WHERE organization_id = %s AND mailbox = %s
                """,
                (key.organization_id, key.mailbox),
            ).fetchone()
            return row["last_synced_at"] if row else None

    def set_watermark(self, key: MailboxKey, timestamp: datetime) -> None:
        """Persist the sync cursor for a mailbox (last writer wins)."""
        sql = """
        INSERT INTO mailbox_watermarks (organization_id, mailbox, last_synced_at)
        VALUES (%s, %s, %s)
        ON CONFLICT (organization_id, mailbox)
        DO UPDATE SET last_synced_at = EXCLUDED.last_synced_at, updated_at = NOW()
        """

        with self.get_connection() as conn:
            conn.execute(sql, (key.organization_id, key.mailbox, timestamp))
            conn.commit()
            log.info("watermark_committed", mailbox=str(key), last_synced_at=timestamp.isoformat())

    # ── Members & notifications ─────────────────────────────────────

    def list_members(self, organization_id: str) -> list[Member]:
        """Current members of an organization."""
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT organization_id, user_id, email, name
                FROM organization_members
                WHERE organization_id = %s
                ORDER BY user_id
                """,
                (organization_id,),
            ).fetchall()
            return [
                Member(
                    organization_id=row["organization_id"],
                    user_id=row["user_id"],
                    email=row["email"] or "",
                    name=row["name"] or "",
                )
                for row in rows
            ]

    def insert_notification(self, notification: Notification) -> int:
        """Insert one notification record."""
        sql = """
        INSERT INTO notifications (organization_id, user_id, type, title, message, data, read, created_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (
                notification.organization_id,
                notification.user_id,
                notification.type,
                notification.title,
                notification.message,
                Json(notification.data),
                notification.read,
                notification.created_at,
            )).fetchone()
            conn.commit()
            return row["id"] if row else 0

    # ── Stats ───────────────────────────────────────────────────────

    def get_stats(self, organization_id: str | None = None) -> dict[str, Any]:
        """Message counts by outcome."""
        sql = """
        SELECT
            COUNT(*) as total,
            COUNT(*) FILTER (WHERE outcome = 'stored_unclassified') as unclassified,
            COUNT(*) FILTER (WHERE outcome = 'no_match') as unmatched,
            COUNT(*) FILTER (WHERE matched_order_id IS NOT NULL) as matched,
            COUNT(*) FILTER (WHERE outcome = 'advance_applied') as advanced,
            COUNT(*) FILTER (WHERE outcome = 'advance_rejected') as rejected
        FROM synced_messages
        WHERE (%s::text IS NULL OR organization_id = %s)
        """

        with self.get_connection() as conn:
            row = conn.execute(sql, (organization_id, organization_id)).fetchone()
            return dict(row) if row else {}

    @staticmethod
    def _row_to_message(row: dict[str, Any]) -> Message:
        try:
            outcome = MessageOutcome(row["outcome"])
        except ValueError:
            outcome = MessageOutcome.STORED_UNCLASSIFIED

        return Message(
            id=row["id"],
            organization_id=row["organization_id"],
            mailbox=row["mailbox"],
            provider_message_id=row["provider_message_id"],
            sender=row["sender"] or "",
            recipient=row["to_email"] or "",
            subject=row["subject"] or "",
            body=row["body_text"] or "",
            message_date=row["message_date"],
            has_attachment=row["has_attachment"] or False,
            matched_order_id=row["matched_order_id"],
            detected_stage=row["detected_stage"],
            ai_summary=row["ai_summary"],
            auto_advanced=row["auto_advanced"] or False,
            outcome=outcome,
            rejection_reason=row["rejection_reason"],
            classified_at=row["classified_at"],
            user_linked_order_id=row["user_linked_order_id"],
        )

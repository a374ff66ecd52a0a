"""Unit tests for the database repository with a mocked psycopg connection."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from order_sync.core.database import Database, advisory_lock_id
from order_sync.core.exceptions import StorageFailure, StorageUnavailable
from order_sync.core.models import MailboxKey
from order_sync.tests.fakes import KEY, make_message


def _cursor(row=None, rows=None):
    cursor = MagicMock()
    cursor.fetchone.return_value = row
    cursor.fetchall.return_value = rows or []
    return cursor


@pytest.fixture
def conn():
    with patch("order_sync.core.database.psycopg.connect") as connect:
        connection = MagicMock()
        connect.return_value = connection
        yield connection


class TestAdvisoryLockId:

    def test_stable_and_signed_64_bit(self):
        lock_id = advisory_lock_id(KEY)
        assert lock_id == advisory_lock_id(MailboxKey(KEY.organization_id, KEY.mailbox))
        assert -(2 ** 63) <= lock_id < 2 ** 63

    def test_differs_per_mailbox(self):
        assert advisory_lock_id(KEY) != advisory_lock_id(MailboxKey(KEY.organization_id, "other@x.com"))


class TestConnectionErrors:

    def test_connect_failure_is_unavailable(self):
        with patch("order_sync.core.database.psycopg.connect", side_effect=psycopg.OperationalError("refused")):
            with pytest.raises(StorageUnavailable):
                Database("postgresql://test").get_watermark(KEY)

    def test_query_error_is_storage_failure(self, conn):
        conn.execute.side_effect = psycopg.errors.UndefinedTable("no such table")
        with pytest.raises(StorageFailure) as excinfo:
            Database("postgresql://test").get_watermark(KEY)
        assert not isinstance(excinfo.value, StorageUnavailable)
        conn.close.assert_called_once()


class TestQueries:

    def test_existing_message_ids(self, conn):
        conn.execute.return_value = _cursor(rows=[{"provider_message_id": "m1"}])
        assert Database("postgresql://test").existing_message_ids(KEY, ["m1", "m2"]) == {"m1"}

    def test_existing_message_ids_empty_list_skips_query(self, conn):
        assert Database("postgresql://test").existing_message_ids(KEY, []) == set()
        conn.execute.assert_not_called()

    def test_get_watermark(self, conn):
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        conn.execute.return_value = _cursor(row={"last_synced_at": ts})
        assert Database("postgresql://test").get_watermark(KEY) == ts

    def test_mailbox_lock_acquires_and_releases(self, conn):
        with Database("postgresql://test").mailbox_lock(KEY):
            pass

        statements = [call.args[0] for call in conn.execute.call_args_list]
        assert statements == ["SELECT pg_advisory_lock(%s)", "SELECT pg_advisory_unlock(%s)"]
        assert conn.execute.call_args_list[0].args[1] == (advisory_lock_id(KEY),)

    def test_unlock_on_dropped_connection_does_not_raise(self, conn):
        conn.execute.side_effect = [_cursor(), psycopg.OperationalError("server closed the connection")]

        with Database("postgresql://test").mailbox_lock(KEY):
            pass

        assert conn.execute.call_count == 2


class TestAdvanceOrderStage:

    def test_stale_stage_returns_none(self, conn):
        conn.execute.return_value = _cursor(row=None)
        message = make_message("m1", subject="Artwork OK", id=7)

        entry = Database("postgresql://test").advance_order_stage(message, "GI/PO/25-26/3004", 2, 3, "ok")

        assert entry is None
        assert conn.execute.call_count == 1

    def test_applies_update_history_and_message(self, conn):
        conn.execute.side_effect = [
            _cursor(row={"id": 1}),
            _cursor(row={"id": 42}),
            _cursor(),
        ]
        message = make_message("m1", subject="PI attached", id=7)

        entry = Database("postgresql://test").advance_order_stage(
            message, "GI/PO/25-26/3004", 1, 2, "Proforma received", pi_number="GI/PI/25-26/I02013"
        )

        assert entry.id == 42
        assert entry.stage == 2
        assert entry.automatic is True
        assert entry.subject == "Auto-advanced: PI attached"
        assert entry.message_id == 7

        update_params = conn.execute.call_args_list[0].args[1]
        assert update_params[:2] == (2, "GI/PI/25-26/I02013")
        assert conn.execute.call_count == 3
        conn.transaction.assert_called_once()

    def test_undated_message_gets_utc_timestamp(self, conn):
        conn.execute.side_effect = [
            _cursor(row={"id": 1}),
            _cursor(row={"id": 43}),
            _cursor(),
        ]
        message = make_message("m1", subject="Artwork OK", id=7, message_date=None)

        entry = Database("postgresql://test").advance_order_stage(message, "GI/PO/25-26/3004", 2, 3, "ok")

        assert entry.timestamp.tzinfo is not None

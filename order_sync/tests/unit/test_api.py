"""Tests for the FastAPI endpoints.

The client is created without entering the lifespan, so no schema
initialization or scheduler runs.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from order_sync.config import MailboxAccount
from order_sync.core.exceptions import AuthenticationFailure, MailboxUnavailable, StorageUnavailable
from order_sync.core.models import HistoryEntry, SyncResult
from order_sync.main import app, get_db, get_sync_processor
from order_sync.tests.fakes import KEY, MAILBOX, ORG


@pytest.fixture
def processor():
    return MagicMock()


@pytest.fixture
def client(mock_db, processor, mock_settings):
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_sync_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestInfoEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_stages(self, client):
        stages = client.get("/stages").json()
        assert [s["id"] for s in stages] == list(range(1, 9))
        assert stages[1]["name"] == "Proforma Issued"

    def test_stats(self, client, mock_db):
        mock_db.get_stats.return_value = {"total": 5, "advanced": 2}
        body = client.get("/stats", params={"organization_id": ORG}).json()

        assert body["total"] == 5
        assert body["advanced"] == 2
        assert body["rejected"] == 0
        mock_db.get_stats.assert_called_once_with(ORG)

    def test_stats_database_down(self, client, mock_db):
        mock_db.get_stats.side_effect = StorageUnavailable("refused")
        assert client.get("/stats").status_code == 503


class TestSyncEndpoint:

    def test_runs_each_matching_mailbox(self, client, processor):
        processor.sync_account.return_value = SyncResult(organization_id=ORG, mailbox=MAILBOX, advanced=1)

        response = client.post("/sync", json={"organization_id": ORG})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["results"][0]["advanced"] == 1
        account = processor.sync_account.call_args.args[0]
        assert account.address == MAILBOX

    def test_unknown_mailbox(self, client, processor):
        response = client.post("/sync", json={"mailbox": "nobody@x.com"})
        assert response.status_code == 404
        processor.sync_account.assert_not_called()

    @pytest.mark.parametrize(
        "error, status",
        [
            (AuthenticationFailure("bad password"), 401),
            (StorageUnavailable("db down"), 503),
            (MailboxUnavailable("imap down"), 502),
        ],
    )
    def test_errors_map_to_status(self, client, processor, error, status):
        processor.sync_account.side_effect = error
        assert client.post("/sync", json={}).status_code == status

    def test_failed_mailbox_keeps_other_results(self, client, processor, mock_settings):
        mock_settings.mailboxes = [MailboxAccount(organization_id=ORG, address="export@ganeshintnl.com")]
        processor.sync_account.side_effect = [
            SyncResult(organization_id=ORG, mailbox=MAILBOX, advanced=2),
            AuthenticationFailure("token expired"),
        ]

        response = client.post("/sync", json={"organization_id": ORG})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "partial"
        assert [r["advanced"] for r in body["results"]] == [2]
        assert body["errors"] == [{
            "organization_id": ORG,
            "mailbox": "export@ganeshintnl.com",
            "status_code": 401,
            "error": "token expired",
        }]


class TestReclassifyEndpoint:

    @patch("order_sync.main.ReclassifyProcessor")
    def test_starts_background_pass(self, mock_processor, client):
        response = client.post("/reclassify", json={"limit": 5, "dry_run": True})

        assert response.status_code == 200
        assert response.json() == {
            "status": "reclassify_started",
            "mailboxes": [str(KEY)],
            "limit": 5,
            "dry_run": True,
        }
        mock_processor.assert_called_once_with(dry_run=True, limit=5)
        mock_processor.return_value.process.assert_called_once_with(KEY)


class TestHistoryEndpoint:

    def test_returns_entries(self, client, mock_db):
        mock_db.get_order_history.return_value = [
            HistoryEntry(
                organization_id=ORG,
                order_id="GI/PO/25-26/3004",
                stage=3,
                subject="Auto-advanced: Artwork OK",
                timestamp=datetime(2026, 3, 1, 12, tzinfo=timezone.utc),
                id=1,
            )
        ]

        response = client.get("/orders/GI-3004/history", params={"organization_id": ORG})

        assert response.status_code == 200
        entry = response.json()[0]
        assert entry["stage"] == 3
        assert entry["automatic"] is True
        assert entry["timestamp"] == "2026-03-01T12:00:00+00:00"
        mock_db.get_order_history.assert_called_once_with(ORG, "GI-3004")

    def test_requires_organization(self, client, mock_settings):
        mock_settings.organization_id = ""
        assert client.get("/orders/GI-3004/history").status_code == 400

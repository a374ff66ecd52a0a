"""
Shared pytest fixtures for order_sync tests.
"""

from unittest.mock import MagicMock

import pytest

from order_sync.classifiers.base import BaseClassifier
from order_sync.classifiers.gateway import ClassifierGateway
from order_sync.core.models import Message, OrderSummary
from order_sync.processors.sync import SyncProcessor
from order_sync.tests.fakes import MAILBOX, NOW, ORG, FakeDatabase, make_message


@pytest.fixture
def fake_db() -> FakeDatabase:
    """In-memory database."""
    db = FakeDatabase()
    db.add_member("user-1")
    db.add_member("user-2")
    return db


@pytest.fixture
def make_processor(fake_db):
    """Build a SyncProcessor over the fake database with a canned backend."""

    def _make(backend: BaseClassifier, **kwargs) -> SyncProcessor:
        kwargs.setdefault("retry_delay", 0)
        kwargs.setdefault("reclassify_on_sync", False)
        return SyncProcessor(
            db=fake_db,
            gateway=ClassifierGateway(backend, timeout=5),
            clock=lambda: NOW,
            **kwargs,
        )

    return _make


@pytest.fixture
def sample_message() -> Message:
    """Proforma invoice email from a supplier."""
    return make_message(
        "msg-pi-1",
        subject="NEW PROFORMA INVOICE - PI GI/PI/25-26/I02013 - PO 3004 - JJ SEAFOODS",
        body="Dear Sir,\n\nPlease find attached the proforma invoice for PO 3004.\n\nRegards,\nJJ Seafoods",
        has_attachment=True,
    )


@pytest.fixture
def sample_orders() -> list[OrderSummary]:
    """Open orders at various stages."""
    return [
        OrderSummary(order_id="GI/PO/25-26/3004", current_stage=1, company="Pescados del Sur",
                     supplier="JJ Seafoods", product="Vannamei Shrimp"),
        OrderSummary(order_id="GI/PO/25-26/3010", current_stage=5, company="Mar Azul",
                     supplier="Silver Sea", product="Squid Rings"),
        OrderSummary(order_id="GI/PO/25-26/2990", current_stage=8, company="Oceano",
                     supplier="JJ Seafoods", product="Cuttlefish"),
    ]


@pytest.fixture
def mock_db():
    """Mock database for testing without real DB connection."""
    db = MagicMock()
    db.message_exists.return_value = False
    db.existing_message_ids.return_value = set()
    db.get_watermark.return_value = None
    db.list_members.return_value = []
    return db


@pytest.fixture
def mock_settings(monkeypatch):
    """Mock settings for testing."""
    from order_sync.config import settings

    monkeypatch.setattr(settings, "organization_id", ORG)
    monkeypatch.setattr(settings, "imap_email", MAILBOX)
    monkeypatch.setattr(settings, "imap_password", "test-password")
    monkeypatch.setattr(settings, "gmail_email", "")
    monkeypatch.setattr(settings, "mailboxes", [])
    monkeypatch.setattr(settings, "gemini_api_key", "test-gemini-key")
    return settings

"""Unit tests for the reclassification pass."""

from order_sync.classifiers.gateway import ClassifierGateway
from order_sync.core.exceptions import ClassificationUnavailable
from order_sync.core.models import MessageOutcome
from order_sync.processors.reclassify import ReclassifyProcessor
from order_sync.tests.fakes import KEY, NOW, FakeBackend, FakeMailbox, make_message, verdict

ORDER = "GI/PO/25-26/3010"


def _ingest_during_outage(fake_db, make_processor, *provider_ids):
    mailbox = FakeMailbox([make_message(pid) for pid in provider_ids])
    make_processor(FakeBackend(error=ClassificationUnavailable("down"))).sync_source(mailbox)


def _reclassifier(fake_db, backend, **kwargs) -> ReclassifyProcessor:
    return ReclassifyProcessor(
        db=fake_db,
        gateway=ClassifierGateway(backend, timeout=5),
        clock=lambda: NOW,
        **kwargs,
    )


class TestReclassifyProcessor:

    def test_applies_verdicts_to_stored_messages(self, fake_db, make_processor):
        fake_db.add_order(ORDER, 5)
        _ingest_during_outage(fake_db, make_processor, "m1", "m2")

        backend = FakeBackend([verdict("m1", ORDER, 6, "Loading photos shared"), verdict("m2", None, None)])
        result = _reclassifier(fake_db, backend).process(KEY)

        assert result.reclassified == 2
        assert fake_db.stage_of(ORDER) == 6
        assert fake_db.stored("m1").outcome == MessageOutcome.ADVANCE_APPLIED
        assert fake_db.stored("m2").outcome == MessageOutcome.NO_MATCH
        assert len(fake_db.notifications) == 2

    def test_illegal_transition_is_rejected(self, fake_db, make_processor):
        fake_db.add_order(ORDER, 5)
        _ingest_during_outage(fake_db, make_processor, "m1")

        _reclassifier(fake_db, FakeBackend([verdict("m1", ORDER, 7)])).process(KEY)

        stored = fake_db.stored("m1")
        assert stored.outcome == MessageOutcome.ADVANCE_REJECTED
        assert stored.detected_stage == 7
        assert fake_db.stage_of(ORDER) == 5

    def test_dry_run_writes_nothing(self, fake_db, make_processor):
        fake_db.add_order(ORDER, 5)
        _ingest_during_outage(fake_db, make_processor, "m1")

        result = _reclassifier(fake_db, FakeBackend([verdict("m1", ORDER, 6)]), dry_run=True).process(KEY)

        assert result.reclassified == 0
        assert fake_db.stage_of(ORDER) == 5
        assert fake_db.stored("m1").outcome == MessageOutcome.STORED_UNCLASSIFIED
        assert fake_db.notifications == []

    def test_limit_bounds_the_batch(self, fake_db, make_processor):
        _ingest_during_outage(fake_db, make_processor, "m1", "m2", "m3")
        backend = FakeBackend([])

        _reclassifier(fake_db, backend, limit=2).process(KEY)

        messages, _, _ = backend.calls[0]
        assert [m.provider_message_id for m in messages] == ["m1", "m2"]
        assert fake_db.stored("m3").outcome == MessageOutcome.STORED_UNCLASSIFIED

    def test_classifier_still_down_leaves_messages(self, fake_db, make_processor):
        _ingest_during_outage(fake_db, make_processor, "m1")

        result = _reclassifier(fake_db, FakeBackend(error=ClassificationUnavailable("down"))).process(KEY)

        assert result.classification_available is False
        assert fake_db.stored("m1").outcome == MessageOutcome.STORED_UNCLASSIFIED

    def test_nothing_pending_skips_backend(self, fake_db):
        backend = FakeBackend([])
        result = _reclassifier(fake_db, backend).process(KEY)

        assert result.reclassified == 0
        assert backend.calls == []

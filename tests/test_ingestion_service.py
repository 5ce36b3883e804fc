"""
Tests for BookingIngestionService

Tests cover:
- Raw store upsert and the per-message status machine
- Idempotent reprocessing and forced replay
- Orphan cleanup when a replayed message spawns fewer events
- Post-commit booking sync fan-out
- Failed message sweep and latest-page ingestion
"""

from datetime import datetime
from unittest.mock import Mock

from booking_ingest.models.booking import Booking
from booking_ingest.models.booking_email import BookingEmail, IngestionStatus
from booking_ingest.models.booking_event import BookingEvent
from booking_ingest.services.parsers import NO_MATCH_PREFIX

from conftest import (
    ecwid_order,
    fareharbor_confirmation,
    fareharbor_rebooking,
    getyourguide_booking,
    make_payload,
)


def stored(db, message_id):
    return db.query(BookingEmail).filter(BookingEmail.message_id == message_id).one()


def broken_reconciler(session):
    reconciler = Mock()
    reconciler.apply.side_effect = RuntimeError("kaboom")
    return reconciler


class TestProcessing:

    def test_confirmation_is_processed(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        result = make_service().process_booking_email("m1")

        assert result.status == "processed"
        assert result.rebuilt is False
        booking = db.query(Booking).one()
        assert result.booking_ids == [booking.id]
        assert booking.last_email_message_id == "m1"

        email = stored(db, "m1")
        assert email.ingestion_status == IngestionStatus.PROCESSED.value
        assert email.failure_reason is None
        assert email.subject.startswith("New booking: Booking #100001")
        assert email.received_at == datetime(2025, 3, 1, 9, 0)
        assert email.last_processed_at == datetime(2025, 3, 20, 12, 0)

    def test_processed_message_is_skipped(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        service = make_service()
        service.process_booking_email("m1")

        result = service.process_booking_email("m1")

        assert result.status == "skipped"
        assert db.query(BookingEvent).count() == 1

    def test_unparsed_message_is_ignored_with_report(self, mail_source, make_service, db):
        mail_source.add(make_payload(
            "n1", "Your weekly newsletter", "Nothing to see here",
            sender="News <news@example.com>",
        ))
        result = make_service().process_booking_email("n1")

        assert result.status == "ignored"
        email = stored(db, "n1")
        assert email.ingestion_status == IngestionStatus.IGNORED.value
        assert email.failure_reason.startswith(NO_MATCH_PREFIX)
        assert "[fareharbor] can_parse=no" in email.failure_reason
        assert db.query(Booking).count() == 0

    def test_fetch_failure_stores_nothing(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        mail_source.fail_fetch.add("m1")

        result = make_service().process_booking_email("m1")

        assert result.status == "failed"
        assert "fetch failed" in result.error
        assert db.query(BookingEmail).count() == 0

    def test_missing_payload(self, make_service):
        result = make_service().process_booking_email("ghost")

        assert result.status == "failed"
        assert result.error.startswith("No payload")

    def test_use_stored_requires_stored_message(self, make_service):
        result = make_service().process_booking_email("ghost", use_stored=True)

        assert result.status == "failed"
        assert result.error == "Message ghost is not stored"

    def test_reconcile_error_marks_message_failed(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        service = make_service(reconciler_factory=broken_reconciler)

        result = service.process_booking_email("m1")

        assert result.status == "failed"
        assert result.error == "kaboom"
        email = stored(db, "m1")
        assert email.ingestion_status == IngestionStatus.FAILED.value
        assert email.failure_reason == "kaboom"
        assert db.query(Booking).count() == 0

    def test_supplied_payload_skips_fetch(self, mail_source, make_service, db):
        result = make_service().process_booking_email("m1", payload=fareharbor_confirmation("m1"))

        assert result.status == "processed"
        assert mail_source.fetch_calls == []


class TestReplay:

    def test_forced_replay_keeps_single_event(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        service = make_service()
        first = service.process_booking_email("m1")

        second = service.process_booking_email("m1", force=True, use_stored=True)

        assert second.status == "processed"
        assert second.booking_ids == first.booking_ids
        assert db.query(BookingEvent).count() == 1
        assert db.query(Booking).one().party_size_total == 3

    def test_replay_with_fewer_items_deletes_orphan(self, mail_source, make_service, db):
        mail_source.add(ecwid_order("E", two_items=True))
        service = make_service()
        service.process_booking_email("E")
        ids = {b.platform_booking_id for b in db.query(Booking).all()}
        assert ids == {"A123", "A123-2"}

        # the corrected message now holds a single item
        mail_source.add(ecwid_order("E"))
        result = service.process_booking_email("E", force=True)

        assert result.status == "processed"
        bookings = db.query(Booking).all()
        assert [b.platform_booking_id for b in bookings] == ["A123"]
        assert bookings[0].product_name == "Krawl Through Krakow Pub Crawl"
        assert db.query(BookingEvent).count() == 1

    def test_orphan_touched_by_other_message_survives(self, mail_source, make_service, db):
        mail_source.add(ecwid_order("E", two_items=True))
        service = make_service()
        service.process_booking_email("E")

        spawned = db.query(Booking).filter(Booking.platform_booking_id == "A123-2").one()
        spawned.last_email_message_id = "someone-else"
        db.commit()

        mail_source.add(ecwid_order("E"))
        service.process_booking_email("E", force=True)

        assert db.query(Booking).count() == 2


class TestBookingSync:

    def test_sync_receives_touched_bookings(self, mail_source, make_service, db):
        mail_source.add(fareharbor_rebooking("r1"))
        sync = Mock()
        result = make_service(booking_sync=sync).process_booking_email("r1")

        old = db.query(Booking).filter(Booking.platform_booking_id == "100001").one()
        new = db.query(Booking).filter(Booking.platform_booking_id == "100002").one()
        assert old.status == "rebooked"
        assert result.booking_ids == [old.id, new.id]
        sync.sync.assert_called_once_with([old.id, new.id])

    def test_sync_failure_does_not_undo_ingestion(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        sync = Mock()
        sync.sync.side_effect = RuntimeError("downstream down")

        result = make_service(booking_sync=sync).process_booking_email("m1")

        assert result.status == "processed"
        assert stored(db, "m1").ingestion_status == IngestionStatus.PROCESSED.value

    def test_no_sync_for_ignored_message(self, mail_source, make_service):
        mail_source.add(make_payload("n1", "Hello", "Hi", sender="x@example.com"))
        sync = Mock()
        make_service(booking_sync=sync).process_booking_email("n1")

        sync.sync.assert_not_called()


class TestBatches:

    def test_reprocess_failed(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        make_service(reconciler_factory=broken_reconciler).process_booking_email("m1")
        assert stored(db, "m1").ingestion_status == IngestionStatus.FAILED.value

        results = make_service().reprocess_failed(limit=10)

        assert [(r.message_id, r.status) for r in results] == [("m1", "processed")]
        assert db.query(Booking).count() == 1

    def test_reprocess_from_stored_bodies(self, mail_source, make_service, db):
        mail_source.add(fareharbor_confirmation("m1"))
        make_service(reconciler_factory=broken_reconciler).process_booking_email("m1")
        fetches = len(mail_source.fetch_calls)

        results = make_service().reprocess_failed(limit=10, use_stored=True)

        assert results[0].status == "processed"
        assert len(mail_source.fetch_calls) == fetches

    def test_reprocess_skips_processed(self, mail_source, make_service):
        mail_source.add(fareharbor_confirmation("m1"))
        service = make_service()
        service.process_booking_email("m1")

        assert service.reprocess_failed(limit=10) == []

    def test_ingest_latest_processes_oldest_first(self, mail_source, make_service):
        mail_source.add(getyourguide_booking("g2", "GYG2", received_at=datetime(2025, 3, 2, 9, 0)))
        mail_source.add(getyourguide_booking("g1", "GYG1", received_at=datetime(2025, 3, 1, 9, 0)))
        mail_source.add(getyourguide_booking("g3", "GYG3", received_at=datetime(2025, 3, 3, 9, 0)))

        results = make_service().ingest_latest(query="label:bookings", max_results=10)

        assert [r.message_id for r in results] == ["g1", "g2", "g3"]
        assert {r.status for r in results} == {"processed"}
        assert mail_source.list_calls == [("label:bookings", 10, None)]

    def test_ingest_latest_listing_error(self, mail_source, make_service):
        mail_source.fail_list = True

        assert make_service().ingest_latest(query="label:bookings") == []

    def test_ingest_latest_without_mail_source(self, make_service):
        assert make_service(source=None).ingest_latest() == []

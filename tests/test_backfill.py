"""
Tests for BackfillDriver

Tests cover:
- Gmail date operators in the search query
- Pagination, oldest-first processing within a page
- Lower/upper date bounds
- Progress reporting
- Idempotent re-runs and listing/fetch failures
"""

from datetime import date, datetime

import pytest

from booking_ingest.models.booking import Booking
from booking_ingest.services.backfill import BackfillDriver, build_query

from conftest import getyourguide_booking

AFTER = date(2025, 3, 2)
BEFORE = date(2025, 3, 5)


@pytest.fixture
def mailbox(mail_source):
    for day in range(1, 6):
        mail_source.add(getyourguide_booking(
            f"g{day}", f"GYG{day}", received_at=datetime(2025, 3, day, 9, 0),
        ))
    return mail_source


@pytest.fixture
def driver(mailbox, make_service):
    return BackfillDriver(mailbox, make_service(), page_size=2)


class TestBuildQuery:

    def test_date_operators(self):
        assert build_query("label:bookings", AFTER, BEFORE) == "label:bookings after:2025/03/02 before:2025/03/05"

    def test_bounds_are_optional(self):
        assert build_query("label:bookings") == "label:bookings"
        assert build_query("", after=AFTER) == "after:2025/03/02"


class TestBackfillRun:

    def test_date_bounded_run(self, driver, mailbox, db):
        report = driver.run("label:bookings", after=AFTER, before=BEFORE)

        assert report.query == "label:bookings after:2025/03/02 before:2025/03/05"
        assert report.pages == 3
        assert report.messages_seen == 5
        assert report.skipped_upper == 1
        assert report.skipped_lower is True
        assert report.statuses == {"processed": 3, "skipped_upper": 1, "skipped_lower": 1}
        assert report.error is None

        ids = sorted(b.platform_booking_id for b in db.query(Booking).all())
        assert ids == ["GYG2", "GYG3", "GYG4"]
        assert [call[2] for call in mailbox.list_calls] == [None, "2", "4"]

    def test_pages_are_processed_oldest_first(self, driver):
        report = driver.run("label:bookings", after=AFTER, before=BEFORE)

        assert [r.message_id for r in report.results] == ["g4", "g2", "g3"]

    def test_progress_reports(self, driver):
        updates = []
        driver.run("label:bookings", after=AFTER, before=BEFORE, on_progress=updates.append)

        assert [u.percent for u in updates] == [40.0, 80.0, 100.0]
        assert updates[0].estimated is True
        assert updates[-1].estimated is False
        assert updates[-1].messages_seen == 5

    def test_max_pages(self, driver):
        updates = []
        report = driver.run("label:bookings", max_pages=1, on_progress=updates.append)

        assert report.pages == 1
        assert report.messages_seen == 2
        assert updates[0].percent == 100.0
        assert updates[0].estimated is False

    def test_rerun_skips_processed(self, driver):
        driver.run("label:bookings")
        report = driver.run("label:bookings")

        assert report.statuses == {"skipped": 5}

    def test_forced_rerun_reprocesses(self, driver, db):
        driver.run("label:bookings")
        report = driver.run("label:bookings", force=True)

        assert report.statuses == {"processed": 5}
        assert db.query(Booking).count() == 5

    def test_listing_error_stops_run(self, driver, mailbox):
        mailbox.fail_list = True
        report = driver.run("label:bookings")

        assert report.pages == 0
        assert report.error == "list failed"

    def test_fetch_failure_is_counted(self, driver, mailbox):
        mailbox.fail_fetch.add("g3")
        report = driver.run("label:bookings")

        assert report.statuses == {"processed": 4, "failed": 1}

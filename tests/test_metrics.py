"""
Tests for process metrics

Tests cover:
- Counter, gauge and histogram bookkeeping and the text exposition
- Ingestion outcomes, parser matches and rebuilds feeding the counters
"""

from unittest.mock import Mock

import pytest

from booking_ingest.utils.metrics import (
    Counter,
    Histogram,
    booking_emails_total,
    booking_sync_total,
    format_prometheus_metrics,
    parser_matches_total,
    reconcile_duration_seconds,
    timeline_rebuilds_total,
)

from conftest import fareharbor_confirmation, make_payload, out_of_order_mailbox


def counter_value(counter, *key):
    return counter.get_all().get(key, 0)


def histogram_count(histogram):
    return histogram.get_all()["totals"].get((), 0)


class TestPrimitives:

    def test_counter_keys_by_label(self):
        counter = Counter("jobs_total", "Jobs", labels=("status",))
        counter.inc(status="ok")
        counter.inc(2, status="ok")
        counter.inc(status="error")

        assert counter.get_all() == {("ok",): 3, ("error",): 1}

    def test_histogram_buckets_are_cumulative(self):
        histogram = Histogram("latency_seconds", "Latency", buckets=(0.1, 1.0, float("inf")))
        histogram.observe(0.05)
        histogram.observe(0.5)
        histogram.observe(5)

        data = histogram.get_all()
        assert data["counts"][()] == {0.1: 1, 1.0: 2, float("inf"): 3}
        assert data["totals"][()] == 3
        assert data["sums"][()] == pytest.approx(5.55)

    def test_histogram_timer_records_one_observation(self):
        histogram = Histogram("block_seconds", "Block")
        with histogram.time():
            pass

        assert histogram.get_all()["totals"][()] == 1

    def test_exposition_format(self):
        text = format_prometheus_metrics()

        assert "# TYPE booking_emails_total counter" in text
        assert "# TYPE booking_emails_by_status gauge" in text
        assert "# HELP timeline_rebuilds_total " in text
        assert text.endswith("\n")


class TestIngestionMetrics:

    def test_processing_counts_outcome_parser_and_duration(self, mail_source, make_service):
        mail_source.add(fareharbor_confirmation("m1"))
        mail_source.add(make_payload("m2", "Hello", "Nothing to see here", sender="friend@example.com"))
        processed = counter_value(booking_emails_total, "processed")
        ignored = counter_value(booking_emails_total, "ignored")
        matches = counter_value(parser_matches_total, "fareharbor")
        timed = histogram_count(reconcile_duration_seconds)

        service = make_service()
        service.process_booking_email("m1")
        service.process_booking_email("m2")

        assert counter_value(booking_emails_total, "processed") == processed + 1
        assert counter_value(booking_emails_total, "ignored") == ignored + 1
        assert counter_value(parser_matches_total, "fareharbor") == matches + 1
        assert histogram_count(reconcile_duration_seconds) == timed + 1

    def test_rebuild_is_counted_once(self, mail_source, make_service):
        out_of_order_mailbox(mail_source)
        service = make_service()
        service.process_booking_email("A")
        service.process_booking_email("D")
        rebuilds = counter_value(timeline_rebuilds_total, "fareharbor")

        assert service.process_booking_email("C").rebuilt is True
        assert counter_value(timeline_rebuilds_total, "fareharbor") == rebuilds + 1

    def test_sync_outcomes(self, mail_source, make_service):
        mail_source.add(fareharbor_confirmation("m1"))
        sync = Mock()
        sync.sync.side_effect = RuntimeError("downstream down")
        errors = counter_value(booking_sync_total, "error")

        make_service(booking_sync=sync).process_booking_email("m1")

        assert counter_value(booking_sync_total, "error") == errors + 1

"""
Tests for the ingestion and health endpoints

Tests cover:
- Single message processing, including stored replays
- Batch ingest / reprocess / backfill endpoints
- Message listing and booking timelines
- Request ID propagation, health checks and the metrics scrape
"""

import pytest
from fastapi.testclient import TestClient

from booking_ingest.database import get_db
from booking_ingest.main import app
from booking_ingest.routers.ingestion import get_ingestion_service

from conftest import fareharbor_amendment, fareharbor_confirmation, getyourguide_booking


@pytest.fixture
def service_options():
    return {"mail_source": True}


@pytest.fixture
def client(db, make_service, service_options):
    """Client bound to the test session; the lifespan (and its worker) is not started."""

    def override_db():
        yield db

    def override_service():
        if not service_options["mail_source"]:
            return make_service(source=None)
        return make_service()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_ingestion_service] = override_service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestProcessEndpoint:

    def test_process_message(self, client, mail_source):
        mail_source.add(fareharbor_confirmation("m1"))

        response = client.post("/api/ingestion/messages/m1/process")

        assert response.status_code == 200
        body = response.json()
        assert body["message_id"] == "m1"
        assert body["status"] == "processed"
        assert len(body["booking_ids"]) == 1
        assert body["rebuilt"] is False

    def test_second_call_is_skipped_unless_forced(self, client, mail_source):
        mail_source.add(fareharbor_confirmation("m1"))
        client.post("/api/ingestion/messages/m1/process")

        assert client.post("/api/ingestion/messages/m1/process").json()["status"] == "skipped"
        forced = client.post("/api/ingestion/messages/m1/process", params={"force": True, "use_stored": True})
        assert forced.json()["status"] == "processed"

    def test_stored_replay_of_unknown_message(self, client):
        response = client.post("/api/ingestion/messages/ghost/process", params={"use_stored": True})

        assert response.status_code == 404

    def test_without_mail_source_uses_stored_copy(self, client, mail_source, service_options):
        mail_source.add(fareharbor_confirmation("m1"))
        client.post("/api/ingestion/messages/m1/process")
        service_options["mail_source"] = False

        assert client.post("/api/ingestion/messages/ghost/process").status_code == 404
        response = client.post("/api/ingestion/messages/m1/process", params={"force": True})
        assert response.json()["status"] == "processed"


class TestBatchEndpoints:

    def test_ingest_latest(self, client, mail_source):
        mail_source.add(fareharbor_confirmation("m1"))
        mail_source.add(fareharbor_amendment("m2"))

        response = client.post("/api/ingestion/ingest", json={"query": "label:bookings", "max_results": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert body["statuses"] == {"processed": 2}
        assert [r["message_id"] for r in body["results"]] == ["m1", "m2"]

    def test_ingest_requires_mail_source(self, client, service_options):
        service_options["mail_source"] = False

        assert client.post("/api/ingestion/ingest").status_code == 503

    def test_reprocess_with_nothing_to_do(self, client):
        response = client.post("/api/ingestion/reprocess", json={"limit": 5})

        assert response.status_code == 200
        assert response.json() == {"total": 0, "statuses": {}, "results": []}

    def test_backfill(self, client, mail_source):
        mail_source.add(getyourguide_booking("g1", "GYG1"))

        response = client.post(
            "/api/ingestion/backfill",
            json={"query": "label:bookings", "after": "2025-02-01", "before": "2025-04-01"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["query"] == "label:bookings after:2025/02/01 before:2025/04/01"
        assert body["statuses"] == {"processed": 1}
        assert body["error"] is None

    def test_backfill_rejects_inverted_range(self, client):
        response = client.post(
            "/api/ingestion/backfill",
            json={"after": "2025-04-01", "before": "2025-02-01"},
        )

        assert response.status_code == 400


class TestReadEndpoints:

    def test_list_messages_by_status(self, client, mail_source):
        mail_source.add(fareharbor_confirmation("m1"))
        client.post("/api/ingestion/messages/m1/process")

        processed = client.get("/api/ingestion/messages", params={"status": "processed"}).json()
        assert [m["message_id"] for m in processed] == ["m1"]
        assert client.get("/api/ingestion/messages", params={"status": "failed"}).json() == []

    def test_list_messages_invalid_status(self, client):
        assert client.get("/api/ingestion/messages", params={"status": "bogus"}).status_code == 400

    def test_booking_timeline(self, client, mail_source):
        mail_source.add(fareharbor_confirmation("m1"))
        mail_source.add(fareharbor_amendment("m2", adults=4))
        client.post("/api/ingestion/messages/m1/process")
        client.post("/api/ingestion/messages/m2/process")

        response = client.get("/api/ingestion/bookings/fareharbor/100001/events")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "amended"
        assert body["party_size_total"] == 5
        assert [e["email_message_id"] for e in body["events"]] == ["m1", "m2"]
        assert [e["event_type"] for e in body["events"]] == ["created", "amended"]

    def test_unknown_booking_timeline(self, client):
        assert client.get("/api/ingestion/bookings/fareharbor/999999/events").status_code == 404


class TestHealthAndMiddleware:

    def test_request_id_is_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "abc123"})

        assert response.status_code == 200
        assert response.json()["status"] == "alive"
        assert response.headers["X-Request-ID"] == "abc123"

    def test_request_id_is_generated(self, client):
        response = client.get("/")

        assert response.json()["name"] == "booking-ingest"
        assert len(response.headers["X-Request-ID"]) == 8

    def test_ready_checks_database(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_detailed_reports_backlog(self, client, mail_source):
        mail_source.add(fareharbor_confirmation("m1"))
        client.post("/api/ingestion/messages/m1/process")

        body = client.get("/health/detailed").json()

        assert body["status"] == "healthy"
        assert body["checks"]["database"]["dialect"] == "sqlite"
        assert body["ingestion"]["processed"] == 1
        assert body["ingestion"]["failed"] == 0

    def test_metrics_exposition(self, client, mail_source):
        mail_source.add(fareharbor_confirmation("m1"))
        client.post("/api/ingestion/messages/m1/process")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'booking_emails_total{status="processed"}' in response.text
        assert 'booking_emails_by_status{status="processed"} 1' in response.text
        assert "# TYPE reconcile_duration_seconds histogram" in response.text

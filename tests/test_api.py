"""Tests for the REST and WebSocket surface."""

import pytest
from fastapi.testclient import TestClient

from vulnscan import __version__, api
from vulnscan.events import CANCELLED_MESSAGE
from vulnscan.service import ScanService


@pytest.fixture
def svc(app_config, monkeypatch):
    service = ScanService(app_config)
    monkeypatch.setattr(api, "service", service)
    return service


@pytest.fixture
def client(svc):
    # No lifespan: the memory store needs no connect and no workers run.
    return TestClient(api.app)


class TestScans:
    """Submit, read, list and cancel."""

    def test_create_scan(self, client, svc):
        resp = client.post("/api/scans", json={
            "url": "http://a.test/",
            "options": {"depth": 1, "max_pages": 3},
            "active_detector_ids": ["security-headers"],
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "queued"

        scan = client.get(f"/api/scans/{body['scan_id']}").json()
        assert scan["target"] == "http://a.test/"
        assert scan["options"]["max_pages"] == 3
        assert scan["active_detector_ids"] == ["security-headers"]
        assert svc.queue.qsize() == 1

    def test_invalid_target(self, client):
        resp = client.post("/api/scans", json={"url": "ftp://a.test/"})
        assert resp.status_code == 400

    def test_missing_url(self, client):
        assert client.post("/api/scans", json={}).status_code == 422

    def test_unknown_scan(self, client):
        assert client.get("/api/scans/scan-nope").status_code == 404
        assert client.post("/api/scans/scan-nope/cancel").status_code == 404

    def test_list_strips_events(self, client):
        scan_id = client.post("/api/scans", json={"url": "http://a.test/"}).json()["scan_id"]
        client.post(f"/api/scans/{scan_id}/cancel")
        listing = client.get("/api/scans").json()
        assert [s["id"] for s in listing] == [scan_id]
        assert "events" not in listing[0]

    def test_cancel_queued(self, client):
        scan_id = client.post("/api/scans", json={"url": "http://a.test/"}).json()["scan_id"]
        resp = client.post(f"/api/scans/{scan_id}/cancel")
        assert resp.json() == {"status": "cancel_requested"}
        scan = client.get(f"/api/scans/{scan_id}").json()
        assert scan["status"] == "cancelled"
        assert scan["events"][-1]["message"] == CANCELLED_MESSAGE
        # idempotent
        assert client.post(f"/api/scans/{scan_id}/cancel").status_code == 200


class TestWebSocket:
    """Progress stream."""

    def test_unknown_scan(self, client):
        with client.websocket_connect("/ws/scans/scan-nope") as ws:
            assert ws.receive_json() == {"error": "Scan not found"}

    def test_finished_scan_gets_terminal_event(self, client):
        scan_id = client.post("/api/scans", json={"url": "http://a.test/"}).json()["scan_id"]
        client.post(f"/api/scans/{scan_id}/cancel")
        with client.websocket_connect(f"/ws/scans/{scan_id}") as ws:
            event = ws.receive_json()
        assert event["scan_id"] == scan_id
        assert event["module"] == "system"
        assert event["status"] == "error"
        assert event["message"] == CANCELLED_MESSAGE


class TestMeta:
    """Health, modules and benchmarks."""

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert body["store"] == "memory"
        assert body["workers"] == 1
        assert body["workers_running"] is False
        assert body["queue_size"] == 0

    def test_modules(self, client):
        names = client.get("/api/modules").json()
        assert names["dast-xss"] == "Reflected XSS"
        assert names["security-headers"] == "Security Headers"

    def test_benchmark_metrics(self, client):
        assert client.get("/api/benchmark/metrics").json() == []
        assert client.get("/api/benchmark/metrics", params={"since": "2026-01-01T00:00:00+00:00"}).json() == []
        assert client.get("/api/benchmark/metrics", params={"since": "last tuesday"}).status_code == 400

    def test_benchmark_modules(self, client):
        assert client.get("/api/benchmark/modules").json() == []

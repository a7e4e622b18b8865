"""Tests for the HTTP API using the Flask test client"""
import threading

import pytest

from conftest import ORDER_OUT
from snackzo.api import TrackerRegistry, create_app
from snackzo.backend import eq


class TestNotificationEndpoints:
    """Notification relay and order-flow functions"""

    @pytest.fixture
    def client(self, backend, offline_dispatcher):
        return create_app(backend, dispatcher=offline_dispatcher).test_client()

    def test_notify_sms_simulated(self, client):
        resp = client.post("/api/notify", json={"channel": "sms", "to": "9876543210", "message": "Hi"})
        assert resp.status_code == 200
        assert resp.get_json() == {"simulated": True, "success": True, "provider": "Simulator"}

    def test_notify_requires_recipient(self, client):
        resp = client.post("/api/notify", json={"channel": "sms", "message": "Hi"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "'to' is required"

    def test_notify_unknown_channel(self, client):
        resp = client.post("/api/notify", json={"channel": "fax", "to": "x"})
        assert resp.status_code == 400

    def test_notify_unconfigured_provider(self, client):
        resp = client.post("/api/notify", json={"channel": "email", "to": "a@b.c", "subject": "S", "html": "H"})
        assert resp.status_code == 500
        assert "not configured" in resp.get_json()["error"]

    def test_body_must_be_json_object(self, client):
        resp = client.post("/api/notify", data="not json", content_type="text/plain")
        assert resp.status_code == 400

    def test_order_status_unknown_order(self, client):
        resp = client.post("/functions/notify-order-status", json={"orderId": "nope", "newStatus": "packed"})
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "Order not found"}

    def test_order_status_skipped(self, client):
        resp = client.post("/functions/notify-order-status", json={"orderId": ORDER_OUT, "newStatus": "refunded"})
        assert resp.get_json() == {"success": True, "skipped": True}

    def test_runner_sms_not_configured(self, client):
        resp = client.post("/functions/notify-runner-sms", json={"orderId": ORDER_OUT, "runnerId": "r-001"})
        assert resp.status_code == 200
        assert resp.get_json() == {"success": False, "error": "SMS not configured"}

    def test_whatsapp_invalid_request(self, backend, mocked_dispatcher):
        client = create_app(backend, dispatcher=mocked_dispatcher).test_client()
        resp = client.post("/functions/notify-whatsapp", json={"type": "unknown", "orderId": ORDER_OUT})
        assert resp.status_code == 400

    def test_whatsapp_sent(self, backend, mocked_dispatcher):
        client = create_app(backend, dispatcher=mocked_dispatcher).test_client()
        resp = client.post("/functions/notify-whatsapp", json={
            "type": "runner_assignment", "orderId": ORDER_OUT, "runnerId": "r-001",
        })
        assert resp.get_json() == {"success": True, "messageSid": "WA1"}

    def test_push_subscription_and_send(self, backend, mocked_dispatcher):
        client = create_app(backend, dispatcher=mocked_dispatcher).test_client()
        resp = client.post("/api/push-subscriptions", json={
            "userId": "u-101",
            "subscription": {"endpoint": "https://push/1", "keys": {"p256dh": "k", "auth": "a"}},
        })
        assert resp.status_code == 201

        resp = client.post("/functions/send-push-notification", json={
            "userId": "u-101", "title": "Order Update", "body": "On the way", "orderId": ORDER_OUT,
        })
        assert resp.get_json()["results"] == [{"endpoint": "https://push/1", "status": "sent"}]

    def test_push_subscription_incomplete(self, client):
        resp = client.post("/api/push-subscriptions", json={"userId": "u-101", "endpoint": "https://push/1"})
        assert resp.status_code == 400

    def test_coding_errors_are_not_404(self, backend, offline_dispatcher):
        """Only missing rows map to 404; a stray KeyError is a server error"""
        app = create_app(backend, dispatcher=offline_dispatcher)

        @app.route("/broken")
        def broken():
            return {}["missing"]

        assert app.test_client().get("/broken").status_code == 500


class TestLocationEndpoints:
    """Runner location ingestion and lookup"""

    @pytest.fixture
    def client(self, backend, offline_dispatcher):
        return create_app(backend, dispatcher=offline_dispatcher).test_client()

    def test_post_then_get(self, backend, client):
        first = client.post("/api/runners/r-002/location", json={
            "lat": 12.9715, "lng": 79.1636, "accuracy": 6, "timestamp": "2025-03-14T19:10:00Z",
            "orderId": ORDER_OUT,
        })
        throttled = client.post("/api/runners/r-002/location", json={
            "lat": 12.9716, "lng": 79.1637, "timestamp": "2025-03-14T19:10:02Z",
        })
        assert first.get_json() == {"recorded": True}
        assert throttled.get_json() == {"recorded": False}
        assert backend.count("order_location_history", [eq("runner_id", "r-002")]) == 1

        data = client.get("/api/runners/r-002/location").get_json()
        assert data["position"] == {"lat": 12.9715, "lng": 79.1636}
        assert data["isOnline"] is True
        assert data["stale"] is False

    def test_post_requires_coordinates(self, client):
        resp = client.post("/api/runners/r-002/location", json={"lat": 12.97})
        assert resp.status_code == 400

    def test_stop_tracking(self, backend, client):
        client.post("/api/runners/r-001/location", json={"lat": 12.97, "lng": 79.16})
        resp = client.delete("/api/runners/r-001/location")
        assert resp.get_json() == {"tracking": False}
        assert backend.select_one("runners", [eq("id", "r-001")])["is_online"] is False

    def test_runner_without_position(self, client):
        data = client.get("/api/runners/r-003/location").get_json()
        assert data == {"runnerId": "r-003", "position": None, "stale": True}

    def test_unknown_runner(self, client):
        assert client.get("/api/runners/r-999/location").status_code == 404


class TestEstimateEndpoints:
    """ETA and delivery estimate"""

    @pytest.fixture
    def client(self, backend, offline_dispatcher):
        return create_app(backend, dispatcher=offline_dispatcher).test_client()

    def test_order_eta(self, client):
        data = client.get(f"/api/orders/{ORDER_OUT}/eta").get_json()
        assert data["estimatedMinutes"] >= 10
        assert data["estimatedSeconds"] == data["estimatedMinutes"] * 60
        assert data["display"].endswith("min") or "h" in data["display"]
        assert set(data["factors"]) == {
            "baseTime", "queueDelay", "trafficDelay", "distanceDelay", "expressBonus", "runnerAdjustment",
        }

    def test_order_eta_express_override(self, client):
        data = client.get(f"/api/orders/{ORDER_OUT}/eta?express=true").get_json()
        assert data["factors"]["baseTime"] == 10
        assert data["factors"]["expressBonus"] == -2

    def test_order_eta_unknown_order(self, client):
        assert client.get("/api/orders/nope/eta").status_code == 404

    def test_delivery_estimate(self, client):
        data = client.get("/api/delivery-estimate?runnerId=r-001").get_json()
        assert data["confidence"] == "high"
        assert data["label"] == "Based on runner history"
        assert data["fallback"] is False
        low, high = data["range"]
        assert low == data["minutes"] - 2
        assert high == data["minutes"] + 3

    def test_delivery_estimate_unassigned(self, client):
        data = client.get("/api/delivery-estimate").get_json()
        assert data["confidence"] == "low"


class TestTrackerRegistry:
    """Per-runner trackers shared by concurrent requests"""

    def test_concurrent_requests_share_one_tracker(self, backend):
        registry = TrackerRegistry(backend)
        barrier = threading.Barrier(8)
        trackers = []

        def lookup():
            barrier.wait()
            trackers.append(registry.get("r-002"))

        threads = [threading.Thread(target=lookup) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(t) for t in trackers}) == 1

"""
Tests for Realtime Service HTTP and WebSocket endpoints.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_realtime.app.main import RealtimeService, create_app
from service_realtime.app.telemetry.client import TelemetryClient

from conftest import TEST_SECRET, make_token


COLLECTOR_KEY = "collector-test-key"


def telemetry_stub():
    def handler(request):
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if request.url.path.endswith("/viewers"):
            return httpx.Response(200, json={"count": 777})
        return httpx.Response(404)

    return TelemetryClient("http://telemetry.test", transport=httpx.MockTransport(handler))


class TestRealtimeService:
    """Test Realtime Service endpoints."""

    @pytest.fixture
    def service(self):
        """Create service with test configuration."""
        config = get_config(
            "realtime",
            8001,
            jwt_secret=TEST_SECRET,
            collector_api_key=COLLECTOR_KEY,
            max_ws_connections=5,
            max_reconnect_attempts=2
        )
        return RealtimeService(config=config, telemetry=telemetry_stub())

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        with TestClient(service.app) as client:
            yield client

    @pytest.fixture
    def collector_headers(self):
        return {"X-Collector-Key": COLLECTOR_KEY}

    def test_create_app(self):
        """Test the application factory."""
        app = create_app(get_config("realtime", 8001, jwt_secret=TEST_SECRET))
        assert isinstance(app.state.realtime_service, RealtimeService)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "realtime"
        assert "websocket" in data["capabilities"]
        assert data["reconnect"]["maxReconnectAttempts"] == 2

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "realtime"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"telemetry": "ok"}

    def test_metrics_endpoint(self, client):
        """Test metrics endpoint."""
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "active_connections" in response.text

    def test_stats_endpoint(self, client):
        """Test stats endpoint."""
        response = client.get("/stats")
        assert response.status_code == 200

        data = response.json()
        assert data["websocket"]["total_connections"] == 0
        assert data["registry"]["total_topics"] == 0
        assert data["snapshots"]["entries"] == 0
        assert data["supervisor"]["running"] is True

    def test_snapshot_missing(self, client):
        """Test reading a topic with no snapshot."""
        response = client.get("/snapshots/streamer:1")
        assert response.status_code == 404

    def test_snapshot_invalid_topic(self, client):
        """Test reading a malformed topic."""
        response = client.get("/snapshots/channel:1")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_TOPIC"

    def test_publish_requires_collector_key(self, client):
        """Test collector endpoints reject requests without the key."""
        response = client.post("/publish", json={
            "topic": "streamer:1",
            "event": "streamer_update",
            "data": {"viewers": 10}
        })

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    def test_publish_and_read_snapshot(self, client, collector_headers):
        """Test publishing stores a readable snapshot."""
        response = client.post("/publish", headers=collector_headers, json={
            "topic": "streamer:1",
            "event": "streamer_update",
            "data": {"viewers": 10}
        })

        assert response.status_code == 200
        assert response.json() == {"success": True, "topic": "streamer:1", "delivered": 0}

        snapshot = client.get("/snapshots/streamer:1").json()
        assert snapshot["topic"] == "streamer:1"
        assert snapshot["event"] == "streamer_update"
        assert snapshot["data"]["viewers"] == 10
        assert "timestamp" in snapshot["data"]

    def test_publish_rejects_unknown_event(self, client, collector_headers):
        """Test only update events can be published."""
        response = client.post("/publish", headers=collector_headers, json={
            "topic": "streamer:1",
            "event": "authenticated",
            "data": {}
        })
        assert response.status_code == 400

    def test_publish_rejects_invalid_topic(self, client, collector_headers):
        """Test publishing to a malformed topic."""
        response = client.post("/publish", headers=collector_headers, json={
            "topic": "streamer",
            "event": "streamer_update"
        })
        assert response.status_code == 400

    def test_websocket_round_trip(self, client, collector_headers):
        """Test authenticate, subscribe and receive a published update."""
        with client.websocket_connect("/ws/stream?client_id=dashboard-1") as websocket:
            websocket.send_json({"event": "authenticate", "data": make_token(user_id=42, username="alice")})
            assert websocket.receive_json() == {
                "event": "authenticated",
                "data": {"success": True, "userId": "42", "username": "alice"}
            }

            websocket.send_json({"event": "subscribe_streamer", "data": "7"})
            assert websocket.receive_json() == {"event": "subscribed", "data": {"topic": "streamer:7"}}

            response = client.post("/publish", headers=collector_headers, json={
                "topic": "streamer:7",
                "event": "viewer_count_update",
                "data": {"streamerId": "7", "count": 1200}
            })
            assert response.json()["delivered"] == 1

            message = websocket.receive_json()
            assert message["event"] == "viewer_count_update"
            assert message["data"]["count"] == 1200

    def test_websocket_token_query(self, client):
        """Test authenticating with the token query parameter."""
        with client.websocket_connect(f"/ws/stream?token={make_token(user_id=5)}") as websocket:
            message = websocket.receive_json()
            assert message["event"] == "authenticated"
            assert message["data"]["userId"] == "5"

    def test_websocket_anonymous_subscribe(self, client):
        """Test anonymous subscriptions produce an error event."""
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_json({"event": "subscribe_game", "data": "1"})
            assert websocket.receive_json() == {
                "event": "error",
                "data": {"message": "Authentication required"}
            }

    def test_websocket_invalid_message(self, client):
        """Test malformed frames produce an error event."""
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_text("not json")
            assert websocket.receive_json() == {
                "event": "error",
                "data": {"message": "Message must be valid JSON"}
            }

    def test_websocket_replays_snapshot(self, client, collector_headers):
        """Test a late subscriber receives the latest value first."""
        client.post("/publish", headers=collector_headers, json={
            "topic": "game:42",
            "event": "game_trend_update",
            "data": {"viewers": 500}
        })

        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_json({"event": "authenticate", "data": {"token": make_token()}})
            websocket.receive_json()

            websocket.send_json({"event": "subscribe_game", "data": {"id": "42"}})
            replay = websocket.receive_json()
            ack = websocket.receive_json()

            assert replay["event"] == "game_trend_update"
            assert replay["data"]["viewers"] == 500
            assert ack == {"event": "subscribed", "data": {"topic": "game:42"}}

    def test_websocket_notification(self, client, collector_headers):
        """Test user notifications reach the user's connection."""
        with client.websocket_connect(f"/ws/stream?token={make_token(user_id=42)}") as websocket:
            websocket.receive_json()

            response = client.post("/notifications", headers=collector_headers, json={
                "user_id": "42",
                "message": "Your streamer went live",
                "type": "success"
            })
            assert response.json()["delivered"] == 1

            message = websocket.receive_json()
            assert message["event"] == "notification"
            assert message["data"]["message"] == "Your streamer went live"

    def test_websocket_alert(self, client, collector_headers):
        """Test alerts reach anonymous connections."""
        with client.websocket_connect("/ws/stream") as websocket:
            response = client.post("/alerts", headers=collector_headers, json={
                "type": "maintenance",
                "message": "Restarting soon"
            })
            assert response.json()["delivered"] == 1

            message = websocket.receive_json()
            assert message["event"] == "alert"
            assert message["data"]["message"] == "Restarting soon"

    def test_websocket_reconnect_warning(self, client, service):
        """Test clients over the failure threshold are warned on connect."""
        service.supervisor.record_failure("flaky-client")
        service.supervisor.record_failure("flaky-client")

        with client.websocket_connect("/ws/stream?client_id=flaky-client") as websocket:
            message = websocket.receive_json()

            assert message["event"] == "notification"
            assert message["data"]["type"] == "warning"
            assert message["data"]["maxReconnectAttempts"] == 2

    def test_websocket_get_viewer_count(self, client):
        """Test viewer count requests are answered by telemetry."""
        with client.websocket_connect("/ws/stream") as websocket:
            websocket.send_json({"event": "get_viewer_count", "data": "7"})
            message = websocket.receive_json()

            assert message["event"] == "viewer_count_update"
            assert message["data"]["count"] == 777

    def test_websocket_connection_limit(self, service):
        """Test connections beyond the limit are refused."""
        service.ws_manager.max_connections = 0

        with TestClient(service.app) as client:
            with client.websocket_connect("/ws/stream") as websocket:
                message = websocket.receive_json()

        assert message["event"] == "error"
        assert "Maximum connections" in message["data"]["message"]

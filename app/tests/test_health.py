"""
Tests for liveness and readiness probes.
"""
from main import app


class TestHealth:

    def test_health_reports_connections_and_gateway_state(self, test_client, auth_token):
        app.state.monitor.last_status = {"connected": True, "state": "open"}

        with test_client.websocket_connect(f"/ws?token={auth_token}") as ws:
            ws.receive_json()
            response = test_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["connections"] == 1
        assert data["whatsapp"] == {"connected": True, "state": "open"}

    def test_ready_without_redis(self, test_client):
        """With fan-out disabled only the database is checked."""
        response = test_client.get("/ready")

        assert response.status_code == 200
        assert list(response.json()["checks"]) == ["database"]

    def test_metrics_exposed(self, test_client):
        response = test_client.get("/metrics")

        assert response.status_code == 200
        assert "websocket_connections_active" in response.text

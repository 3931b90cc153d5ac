"""
Tests for the liveness and readiness probes
"""
import pytest

from partner_sync.core.config import settings


@pytest.mark.integration
class TestHealthCheck:

    async def test_liveness(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_readiness_healthy(self, test_client):
        response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "db": "ok", "scheduler": "ok"}

    async def test_readiness_degraded_when_scheduler_stopped(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", True)

        response = await test_client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["scheduler"] == "stopped"

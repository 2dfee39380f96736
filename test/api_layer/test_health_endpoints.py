# ============================================================================
# FILE: test/api_layer/test_health_endpoints.py
# Health, readiness, liveness and breaker endpoints
# ============================================================================

from payment_resilience.services.shared_cache import InMemorySharedCache


class TestHealthEndpoints:
    """Test health, readiness, and liveness endpoints."""

    async def test_health_check_connected(self, client):
        """✓ DB and cache connected → 200"""
        response = await client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["cache"] == "connected"

    async def test_health_check_cache_down(self, client, services, monkeypatch):
        """✓ Cache unreachable → 503"""
        async def down(self):
            raise ConnectionError("Connection refused")

        monkeypatch.setattr(InMemorySharedCache, "ping", down)

        response = await client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["cache"] == "disconnected"

    async def test_ready_and_live(self, client):
        assert (await client.get("/ready")).json() == {"status": "ready"}
        assert (await client.get("/live")).json() == {"status": "alive"}


class TestBreakerEndpoints:

    async def test_breaker_snapshots(self, client, services):
        services.payment_flow.breaker_for("venue_1")

        response = await client.get("/health/breakers")

        breakers = response.json()["data"]["breakers"]
        assert breakers[0]["partition"] == "venue_1"
        assert breakers[0]["state"] == "closed"

    async def test_critical_signal_tightens(self, client, services):
        """✓ critical load signal → partition breaker tightened"""
        response = await client.post("/health/breakers/venue_1/threshold", json={"level": "critical"})

        assert response.status_code == 200
        assert response.json()["data"]["breakers_tightened"] == 1
        breaker = services.payment_flow.breaker_for("venue_1")
        assert breaker.failure_threshold == 2
        assert breaker.reset_timeout == 45.0

    async def test_unknown_level_422(self, client):
        response = await client.post("/health/breakers/venue_1/threshold", json={"level": "panic"})

        assert response.status_code == 422

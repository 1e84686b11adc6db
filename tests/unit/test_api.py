"""HTTP tests for the rate limit middleware, health and admin routes."""

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from portalguard.api.middleware import DEFAULT_PATH_POLICIES, RateLimitMiddleware
from portalguard.config import Settings, StoreBackendType
from portalguard.core.errors import StoreUnavailable
from portalguard.core.policy import PolicyRegistry, RateLimitPolicy
from portalguard.core.storage.memory import InMemoryBackend
from portalguard.main import create_app

ADMIN = {"X-Admin-Token": "admin-secret"}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend=StoreBackendType.MEMORY,
        admin_token="admin-secret",
        fingerprint_header=None,
    )


@pytest.fixture
def api_registry() -> PolicyRegistry:
    return PolicyRegistry(
        [
            RateLimitPolicy(
                name="auth",
                window_duration_ms=900_000,
                max_requests=2,
                block_duration_ms=1_800_000,
            ),
            RateLimitPolicy(name="upload", window_duration_ms=60_000, max_requests=2),
            RateLimitPolicy(name="api", window_duration_ms=60_000, max_requests=100),
        ]
    )


def _with_routes(app: FastAPI) -> FastAPI:
    @app.post("/auth/login")
    async def login():
        return {"ok": True}

    @app.post("/upload")
    async def upload():
        return {"ok": True}

    @app.get("/api/items")
    async def items():
        return []

    return app


@pytest.fixture
def client(settings, api_registry, clock):
    app = _with_routes(
        create_app(
            settings=settings,
            backend=InMemoryBackend(clock=clock),
            registry=api_registry,
            clock=clock,
        )
    )
    with TestClient(app) as test_client:
        yield test_client


def _from(ip: str) -> dict[str, str]:
    return {"X-Forwarded-For": ip}


# =============================================================================
# Middleware
# =============================================================================


class TestMiddleware:

    def test_allowed_request_carries_headers(self, client: TestClient, clock) -> None:
        response = client.post("/auth/login", headers=_from("1.2.3.4"))

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert response.headers["X-RateLimit-Reset"] == str(clock.now + 900_000)

    def test_denied_request_gets_429(self, client: TestClient) -> None:
        for _ in range(2):
            assert client.post("/upload", headers=_from("1.2.3.4")).status_code == 200

        response = client.post("/upload", headers=_from("1.2.3.4"))

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["Retry-After"] == "60"
        assert "X-RateLimit-BlockedUntil" not in response.headers
        body = response.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["limit"] == 2
        assert body["remaining"] == 0
        assert body["retry_after"] == 60
        assert body["blocked"] is False
        assert "blocked_until" not in body

    def test_blocked_request_reports_block(self, client: TestClient, clock) -> None:
        for _ in range(2):
            client.post("/auth/login", headers=_from("1.2.3.4"))

        response = client.post("/auth/login", headers=_from("1.2.3.4"))

        assert response.status_code == 429
        assert response.headers["X-RateLimit-BlockedUntil"] == str(clock.now + 1_800_000)
        assert response.headers["Retry-After"] == "1800"
        body = response.json()
        assert body["blocked"] is True
        assert body["blocked_until"].startswith("2023-11-14T22:30:00")

    def test_callers_do_not_share_counters(self, client: TestClient) -> None:
        for _ in range(3):
            client.post("/upload", headers=_from("1.2.3.4"))

        assert client.post("/upload", headers=_from("5.6.7.8")).status_code == 200

    def test_health_is_not_limited(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers
        assert response.json() == {"status": "healthy", "store": "ok", "fail_open_events": 0}

    def test_unregistered_policy_passes_through(self, client: TestClient) -> None:
        # No "form_submit" policy in this registry
        response = client.post("/forms/abc/submit")

        assert response.status_code == 404
        assert "X-RateLimit-Limit" not in response.headers

    def test_success_headers_can_be_disabled(self, api_registry, clock) -> None:
        settings = Settings(
            store_backend=StoreBackendType.MEMORY, rate_limit_headers_on_success=False
        )
        app = _with_routes(
            create_app(settings=settings, backend=InMemoryBackend(clock=clock), registry=api_registry, clock=clock)
        )
        with TestClient(app) as test_client:
            response = test_client.get("/api/items")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers


class TestStoreOutage:

    @pytest.fixture
    def outage_client(self, settings, api_registry, clock):
        backend = AsyncMock()
        backend.get.side_effect = StoreUnavailable("connection refused")
        backend.increment.side_effect = StoreUnavailable("connection refused")
        backend.ping.return_value = False
        app = _with_routes(
            create_app(settings=settings, backend=backend, registry=api_registry, clock=clock)
        )
        with TestClient(app) as test_client:
            yield test_client

    def test_requests_pass_while_store_is_down(self, outage_client: TestClient) -> None:
        for _ in range(5):
            response = outage_client.post("/upload", headers=_from("1.2.3.4"))
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Remaining"] == "2"

    def test_health_reports_outage(self, outage_client: TestClient) -> None:
        outage_client.post("/upload")

        assert outage_client.get("/health").json() == {
            "status": "healthy",
            "store": "unavailable",
            "fail_open_events": 1,
        }


def test_path_policy_resolution() -> None:
    middleware = RateLimitMiddleware(FastAPI(), DEFAULT_PATH_POLICIES)

    assert middleware.resolve_policy("/health") is None
    assert middleware.resolve_policy("/auth/signin") == "auth"
    assert middleware.resolve_policy("/en/auth/signin") == "auth"
    assert middleware.resolve_policy("/api/auth/password-reset") == "password_reset"
    assert middleware.resolve_policy("/api/forms/42/submit") == "form_submit"
    assert middleware.resolve_policy("/api/admin/media/upload") == "upload"
    assert middleware.resolve_policy("/api/notifications/send") == "notification"
    assert middleware.resolve_policy("/api/news") == "api"
    assert middleware.resolve_policy("/authors") == "api"


# =============================================================================
# Admin routes
# =============================================================================


class TestAdminRoutes:

    def test_requires_token(self, client: TestClient) -> None:
        assert client.get("/admin/rate-limits/auth/1.2.3.4").status_code == 403
        assert (
            client.get("/admin/rate-limits/auth/1.2.3.4", headers={"X-Admin-Token": "nope"}).status_code
            == 403
        )

    def test_status_is_read_only(self, client: TestClient) -> None:
        client.post("/auth/login", headers=_from("1.2.3.4"))

        for _ in range(3):
            response = client.get("/admin/rate-limits/auth/1.2.3.4", headers=ADMIN)
            assert response.status_code == 200
            body = response.json()
            assert body["remaining"] == 1
            assert body["allowed"] is True
            assert body["blocked"] is False

    def test_reset_lifts_block(self, client: TestClient) -> None:
        for _ in range(3):
            client.post("/auth/login", headers=_from("1.2.3.4"))
        assert client.get("/admin/rate-limits/auth/1.2.3.4", headers=ADMIN).json()["blocked"]

        response = client.delete("/admin/rate-limits/auth/1.2.3.4", headers=ADMIN)

        assert response.status_code == 204
        assert client.post("/auth/login", headers=_from("1.2.3.4")).status_code == 200

    def test_unknown_policy_is_404(self, client: TestClient) -> None:
        response = client.get("/admin/rate-limits/nope/1.2.3.4", headers=ADMIN)

        assert response.status_code == 404

    def test_reset_reports_store_outage(self, settings, api_registry, clock) -> None:
        backend = AsyncMock()
        backend.get.return_value = None
        backend.increment.return_value = 1
        backend.delete.side_effect = StoreUnavailable("down")
        app = create_app(settings=settings, backend=backend, registry=api_registry, clock=clock)

        with TestClient(app) as test_client:
            response = test_client.delete("/admin/rate-limits/auth/1.2.3.4", headers=ADMIN)

        assert response.status_code == 503


def test_explicit_empty_registry_is_kept(settings, clock) -> None:
    app = _with_routes(
        create_app(
            settings=settings,
            backend=InMemoryBackend(clock=clock),
            registry=PolicyRegistry(),
            clock=clock,
        )
    )

    with TestClient(app) as test_client:
        assert test_client.app.state.limiter.registry.names() == []
        response = test_client.post("/auth/login", headers=_from("1.2.3.4"))

    assert response.status_code == 200
    assert "X-RateLimit-Limit" not in response.headers

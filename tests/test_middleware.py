"""
Tests for Middleware - partner_sync/core/middleware.py

Covers:
- CorrelationIdMiddleware: correlation ID propagation
- RequestLoggingMiddleware: request logging without secret headers
- WebhookRateLimitMiddleware: webhook rate limiting
- Exception handlers for AppException and generic exceptions
- SecurityHeadersMiddleware
- setup_middleware: the full stack
"""
import logging
import time
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from partner_sync.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    WebhookRateLimitMiddleware,
    app_exception_handler,
    generic_exception_handler,
)
from partner_sync.core.exceptions import (
    ErrorCode,
    QueueItemNotFoundError,
    ValidationException,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    return PlainTextResponse("webhook ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("test failure")


def _build_app(
    *,
    routes: list[Route] | None = None,
    middlewares: list[tuple] | None = None,
) -> Starlette:
    """Minimal Starlette app with the given middleware"""
    default_routes = [
        Route("/test", _hello),
        Route("/api/webhook", _webhook, methods=["GET", "POST"]),
        Route("/error", _error),
    ]
    app = Starlette(routes=routes or default_routes)
    if middlewares:
        for mw_class, kwargs in middlewares:
            app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert len(response.headers["x-correlation-id"]) > 0

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "my-correlation-id"})
            assert response.headers["x-correlation-id"] == "my-correlation-id"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            r1 = client.get("/test")
            r2 = client.get("/test")
            assert r1.headers["x-correlation-id"] != r2.headers["x-correlation-id"]


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_logged(self, caplog) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with caplog.at_level(logging.INFO, logger="partner_sync.core.middleware"):
            with TestClient(app) as client:
                response = client.get("/test")

        assert response.status_code == 200
        assert any("Request completed: GET /test" in r.getMessage() for r in caplog.records)

    @pytest.mark.unit
    def test_signature_header_not_logged(self, caplog) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with caplog.at_level(logging.DEBUG, logger="partner_sync.core.middleware"):
            with TestClient(app) as client:
                client.post(
                    "/api/webhook",
                    headers={"X-OLMED-ERP-API-SIGNATURE": "deadbeefsignature"},
                    content=b"{}",
                )

        for record in caplog.records:
            assert "deadbeefsignature" not in record.getMessage()
            assert "deadbeefsignature" not in str(getattr(record, "extra_data", ""))

    @pytest.mark.unit
    def test_credential_headers_reported_as_presence_only(self, caplog) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with caplog.at_level(logging.INFO, logger="partner_sync.core.middleware"):
            with TestClient(app) as client:
                client.get(
                    "/test",
                    headers={"X-Admin-API-Key": "admin-secret-value", "Authorization": "Bearer tok-123"},
                )

        records = [r for r in caplog.records if "Request completed" in r.getMessage()]
        assert len(records) == 1
        extra = records[0].extra_data
        assert extra["credentials"] == {
            "X-OLMED-ERP-API-SIGNATURE": False,
            "X-Admin-API-Key": True,
            "Authorization": True,
        }
        assert "admin-secret-value" not in str(extra)
        assert "tok-123" not in str(extra)

    @pytest.mark.unit
    def test_query_values_not_logged(self, caplog) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with caplog.at_level(logging.INFO, logger="partner_sync.core.middleware"):
            with TestClient(app) as client:
                client.get("/test?status=failed&token=query-secret")

        record = next(r for r in caplog.records if "Request completed" in r.getMessage())
        assert record.extra_data["query_keys"] == ["status", "token"]
        assert "query-secret" not in str(record.extra_data)

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")
            assert response.status_code == 500


# ============================================================================
# WebhookRateLimitMiddleware
# ============================================================================


class TestWebhookRateLimitMiddleware:

    @pytest.mark.unit
    def test_allows_requests_under_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 5, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(5):
                assert client.post("/api/webhook").status_code == 200

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 3, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/api/webhook").status_code == 200

            response = client.post("/api/webhook")
            assert response.status_code == 429
            assert response.headers["Retry-After"] == "60"

    @pytest.mark.unit
    def test_non_webhook_paths_not_limited(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            assert client.post("/api/webhook").status_code == 200
            assert client.post("/api/webhook").status_code == 429

            assert client.get("/test").status_code == 200
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_only_webhook_posts_are_limited(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})]
        )
        with TestClient(app) as client:
            assert client.get("/api/webhook").status_code == 200
            assert client.get("/api/webhook").status_code == 200
            assert client.post("/api/webhook").status_code == 200
            assert client.post("/api/webhook").status_code == 429

    @pytest.mark.unit
    def test_limit_follows_configured_paths(self) -> None:
        app = _build_app(
            middlewares=[(
                WebhookRateLimitMiddleware,
                {"paths": ["/hooks/partner"], "max_requests": 1, "window_seconds": 60},
            )]
        )
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/api/webhook").status_code == 200

    @pytest.mark.unit
    def test_429_uses_webhook_response_shape(self) -> None:
        app = _build_app(
            middlewares=[(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 30})]
        )
        with TestClient(app) as client:
            client.post("/api/webhook")
            response = client.post("/api/webhook")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.json()["success"] is False
        assert response.json()["error"] == "Rate limit exceeded"

    @pytest.mark.unit
    def test_cleanup_removes_old_entries(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)

        now = time.monotonic()
        mw._requests["1.2.3.4"] = [now - 120, now - 90, now - 30, now]

        mw._cleanup_window("1.2.3.4", now)

        assert len(mw._requests["1.2.3.4"]) == 2

    @pytest.mark.unit
    def test_cleanup_deletes_empty_ip(self) -> None:
        mw = WebhookRateLimitMiddleware(_build_app(), max_requests=100, window_seconds=60)

        now = time.monotonic()
        mw._requests["1.2.3.4"] = [now - 120]

        mw._cleanup_window("1.2.3.4", now)

        assert "1.2.3.4" not in mw._requests

    @pytest.mark.unit
    def test_429_response_includes_correlation_id(self) -> None:
        app = _build_app(
            middlewares=[
                (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60}),
                (CorrelationIdMiddleware, {}),
            ]
        )
        with TestClient(app) as client:
            client.post("/api/webhook")
            response = client.post("/api/webhook")

            assert response.status_code == 429
            assert "x-correlation-id" in response.headers


# ============================================================================
# Exception handlers
# ============================================================================


class TestAppExceptionHandler:

    async def test_handles_app_exception(self) -> None:
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/queue/123"

        response = await app_exception_handler(mock_request, QueueItemNotFoundError(123))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 404
        assert "x-correlation-id" in response.headers
        assert ErrorCode.QUEUE_ITEM_NOT_FOUND.value in response.body.decode()

    async def test_handles_validation_exception(self) -> None:
        exc = ValidationException(message="limit must be positive", field="limit")

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/queue/products"

        response = await app_exception_handler(mock_request, exc)

        assert response.status_code == 400


class TestGenericExceptionHandler:

    async def test_handles_unexpected_exception(self) -> None:
        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/something"

        response = await generic_exception_handler(mock_request, RuntimeError("unexpected"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        mock_request = AsyncMock(spec=Request)
        mock_request.url.path = "/api/test"

        response = await generic_exception_handler(mock_request, exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body


# ============================================================================
# SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeadersMiddleware:

    @pytest.mark.unit
    def test_nosniff_on_all_responses(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"

    @pytest.mark.unit
    def test_no_csp_or_hsts_in_debug_mode(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "content-security-policy" not in response.headers
            assert "strict-transport-security" not in response.headers

    @pytest.mark.unit
    def test_api_responses_are_not_cached(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            assert client.get("/api/webhook").headers["cache-control"] == "no-store"
            assert "cache-control" not in client.get("/test").headers

    @pytest.mark.unit
    def test_hsts_includes_subdomains(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert "includeSubDomains" in response.headers.get("strict-transport-security", "")


# ============================================================================
# setup_middleware
# ============================================================================


class TestSetupMiddleware:

    async def test_full_middleware_stack(self, test_client) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

    async def test_webhook_through_full_stack(self, test_client, make_webhook) -> None:
        body, signature = make_webhook({"productData": {"sku": "X1"}})

        response = await test_client.post(
            "/api/webhook",
            json=body,
            headers={"X-OLMED-ERP-API-SIGNATURE": signature},
        )

        assert response.status_code == 200
        assert "x-correlation-id" in response.headers
        assert response.headers.get("x-content-type-options") == "nosniff"

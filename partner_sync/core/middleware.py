"""
HTTP middleware and exception handlers.

- CorrelationIdMiddleware: X-Correlation-ID in and out
- RequestLoggingMiddleware: one line per request; credential headers are
  reported as present or absent and query values never reach the logs
- WebhookRateLimitMiddleware: sliding window per client on the partner
  webhook route only
- SecurityHeadersMiddleware: nosniff everywhere, HSTS outside DEBUG,
  no-store on API responses
- AppException / unexpected exception handlers
"""
import time
from collections import defaultdict
from typing import Callable, Iterable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from partner_sync.core.config import ADMIN_API_KEY_HEADER, settings
from partner_sync.core.exceptions import AppException, ErrorCode
from partner_sync.core.logging import get_logger, get_correlation_id, set_correlation_id

logger = get_logger(__name__)

WEBHOOK_PATH = "/api/webhook"


def credential_headers() -> tuple[str, ...]:
    """Headers whose values are secrets: the webhook signature, the operator key, bearer tokens"""
    return (settings.WEBHOOK_SIGNATURE_HEADER, ADMIN_API_KEY_HEADER, "Authorization")


def describe_request(request: Request) -> dict:
    """Loggable summary of a request; carries no header or query values"""
    return {
        "method": request.method,
        "path": request.url.path,
        "query_keys": sorted(request.query_params.keys()),
        "client_host": request.client.host if request.client else None,
        "content_length": request.headers.get("content-length"),
        "credentials": {name: name in request.headers for name in credential_headers()},
    }


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)

        # The webhook route switches the context to the envelope guid; the
        # caller still gets back the id it sent
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request once it finishes"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        started = time.monotonic()
        summary = describe_request(request)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra_data={
                    **summary,
                    "duration_seconds": round(time.monotonic() - started, 4),
                    "error_type": type(e).__name__,
                },
                exc_info=True
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"Request completed: {request.method} {request.url.path}",
            extra_data={
                **summary,
                "status_code": response.status_code,
                "duration_seconds": round(time.monotonic() - started, 4),
            }
        )
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit per client IP on POSTs to the webhook route.

    Over the limit the partner gets 429 in the webhook response shape, with
    Retry-After set to the window length. Operator and health routes are
    never limited.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        paths: Iterable[str] = (WEBHOOK_PATH,),
        max_requests: int = 100,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._paths = frozenset(p.rstrip("/") for p in paths)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)

    def applies_to(self, request: Request) -> bool:
        return request.method == "POST" and request.url.path.rstrip("/") in self._paths

    def _cleanup_window(self, ip: str, now: float) -> None:
        cutoff = now - self._window_seconds
        timestamps = [ts for ts in self._requests.get(ip, []) if ts >= cutoff]
        if timestamps:
            self._requests[ip] = timestamps
        else:
            self._requests.pop(ip, None)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        if not self.applies_to(request):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()
        self._cleanup_window(client_ip, now)

        if len(self._requests.get(client_ip, [])) >= self._max_requests:
            logger.warning(
                "Webhook rate limit exceeded",
                extra_data={
                    "client_ip": client_ip,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "message": "Too many webhook deliveries, retry later",
                    "error": "Rate limit exceeded",
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._requests[client_ip].append(now)
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    X-Content-Type-Options on every response, HSTS and the CSP upgrade
    directive outside DEBUG. API responses (queue contents, token status)
    are marked ``Cache-Control: no-store``.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"

        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """500 with a generic body; the exception itself only goes to the logs"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


def setup_middleware(app: FastAPI) -> None:
    # The last middleware added is the outermost.
    # Request order: SecurityHeaders -> CorrelationId -> RequestLogging -> RateLimit -> app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        paths=(WEBHOOK_PATH,),
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

"""
Partner API authentication client.

Logs in, refreshes and logs out against ``{base}/erp-api/auth/*`` and keeps
the resulting bearer token in the shared TokenCache.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from partner_sync.core.config import settings
from partner_sync.core.crypto import decrypt_if_encrypted
from partner_sync.core.exceptions import ErrorCode, PartnerApiError, ServiceTimeoutError
from partner_sync.core.logging import get_logger
from partner_sync.domain.services.token_cache import TokenCache

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600
LOGOUT_TIMEOUT_SECONDS = 10.0


@dataclass
class AuthResult:
    """Outcome of an authentication call; never carries the token itself"""

    success: bool
    method: str  # "cached" | "refresh" | "login"
    expires_at: datetime | None = None
    expires_in: int | None = None
    message: str = ""


def _parse_token_response(operation: str, response: httpx.Response) -> tuple[str, int, str]:
    try:
        body: dict[str, Any] = response.json()
    except ValueError as e:
        raise PartnerApiError.from_response(
            operation, response, message=f"{operation} returned a non-JSON body"
        ) from e

    if not isinstance(body, dict):
        body = {}
    token = body.get("access_token") or body.get("token")
    if not token:
        raise PartnerApiError.from_response(
            operation,
            response,
            message=f"{operation} response has no access_token",
            error_code=ErrorCode.PARTNER_AUTH_FAILED,
        )
    expires_in = body.get("expires_in") or DEFAULT_EXPIRES_IN
    return token, int(expires_in), body.get("token_type") or "Bearer"


class PartnerClient:
    def __init__(
        self,
        token_cache: TokenCache,
        *,
        base_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        timeout: float | None = None,
        refresh_threshold_seconds: float | None = None,
    ):
        master = settings.CONFIG_MASTER_KEY or None
        self.token_cache = token_cache
        self.base_url = (base_url or settings.PARTNER_API_BASE_URL).rstrip("/")
        self._username = username if username is not None else decrypt_if_encrypted(
            settings.PARTNER_API_USERNAME, master
        )
        self._password = password if password is not None else decrypt_if_encrypted(
            settings.PARTNER_API_PASSWORD, master
        )
        self.timeout = timeout or settings.PARTNER_API_TIMEOUT_SECONDS
        self.refresh_threshold_seconds = (
            settings.TOKEN_REFRESH_THRESHOLD_SECONDS
            if refresh_threshold_seconds is None
            else refresh_threshold_seconds
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self._username and self._password)

    def _headers(self, token: str | None = None) -> dict[str, str]:
        headers = {"accept": "application/json", "X-CSRF-TOKEN": ""}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(self, operation: str, path: str, **kwargs) -> httpx.Response:
        timeout = kwargs.pop("timeout", self.timeout)
        try:
            async with httpx.AsyncClient() as client:
                return await client.post(f"{self.base_url}{path}", timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError("partner_api", timeout) from e
        except httpx.HTTPError as e:
            raise PartnerApiError(
                f"{operation} failed: {type(e).__name__}",
                details={"operation": operation},
            ) from e

    async def login(self) -> AuthResult:
        """Full login; stores the new token in the cache"""
        if not self.has_credentials:
            raise PartnerApiError(
                "partner credentials are not configured",
                error_code=ErrorCode.PARTNER_AUTH_FAILED,
            )

        response = await self._post(
            "login",
            "/erp-api/auth/login",
            json={"username": self._username, "password": self._password},
            headers=self._headers(),
        )
        if response.status_code >= 400:
            raise PartnerApiError.from_response(
                "login", response, error_code=ErrorCode.PARTNER_AUTH_FAILED
            )

        token, expires_in, token_type = _parse_token_response("login", response)
        expires_at = self.token_cache.set_token_for(token, expires_in, token_type)
        logger.info(
            "Partner login succeeded",
            extra_data={"expires_at": expires_at.isoformat(), "expires_in": expires_in},
        )
        return AuthResult(
            success=True,
            method="login",
            expires_at=expires_at,
            expires_in=expires_in,
            message="Logged in",
        )

    async def refresh(self) -> AuthResult | None:
        """Exchange the current token for a new one; None when that is not possible"""
        current = self.token_cache.peek()
        if current is None:
            return None

        try:
            response = await self._post(
                "refresh",
                "/erp-api/auth/refresh",
                headers=self._headers(current.value),
            )
            if response.status_code >= 400:
                raise PartnerApiError.from_response("refresh", response)
            token, expires_in, token_type = _parse_token_response("refresh", response)
        except (PartnerApiError, ServiceTimeoutError) as e:
            logger.warning(
                "Partner token refresh failed, falling back to login",
                extra_data={"error": e.message, "details": e.details},
            )
            return None

        expires_at = self.token_cache.set_token_for(token, expires_in, token_type)
        logger.info(
            "Partner token refreshed",
            extra_data={"expires_at": expires_at.isoformat()},
        )
        return AuthResult(
            success=True,
            method="refresh",
            expires_at=expires_at,
            expires_in=expires_in,
            message="Token refreshed",
        )

    async def refresh_if_needed(self) -> AuthResult:
        """
        Keep a usable token in the cache.

        A token still valid beyond the refresh threshold is kept; otherwise
        refresh is tried first and a full login is the last resort.
        """
        current = self.token_cache.peek()
        remaining = self.token_cache.seconds_remaining()
        if current is not None and remaining is not None and remaining > self.refresh_threshold_seconds:
            return AuthResult(
                success=True,
                method="cached",
                expires_at=current.expires_at,
                message="Token still valid",
            )

        refreshed = await self.refresh()
        if refreshed is not None:
            return refreshed
        return await self.login()

    async def ensure_token(self) -> str | None:
        """Cached token, or a fresh login when credentials are configured"""
        token = self.token_cache.get_token()
        if token or not self.has_credentials:
            return token
        await self.login()
        return self.token_cache.get_token()

    async def logout(self) -> bool:
        """Best-effort logout; the local cache is cleared either way"""
        current = self.token_cache.peek()
        self.token_cache.invalidate()
        if current is None:
            return False

        try:
            response = await self._post(
                "logout",
                "/erp-api/auth/logout",
                headers=self._headers(current.value),
                timeout=LOGOUT_TIMEOUT_SECONDS,
            )
        except (PartnerApiError, ServiceTimeoutError) as e:
            logger.warning("Partner logout failed", extra_data={"error": e.message})
            return False

        ok = response.status_code < 400
        if ok:
            logger.info("Partner logout succeeded")
        else:
            logger.warning(
                "Partner logout rejected",
                extra_data={"status_code": response.status_code},
            )
        return ok

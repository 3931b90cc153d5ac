"""
API key check for operator endpoints.

Usage:
    @router.get("/cron/status")
    async def scheduler_status(
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from partner_sync.core.config import ADMIN_API_KEY_HEADER, settings
from partner_sync.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name=ADMIN_API_KEY_HEADER, auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    Validate the operator API key.

    401 when the header is missing, 403 when it does not match.
    With ADMIN_API_KEY unset the operator endpoints are closed entirely.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Operator endpoint refused, ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing API key, {ADMIN_API_KEY_HEADER} header required",
        )

    if not hmac.compare_digest(api_key.encode(), settings.ADMIN_API_KEY.encode()):
        logger.warning("Operator endpoint refused, wrong API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

"""
Process-wide service instances.

The token cache, partner client and job scheduler live for the whole
process and are shared by the API routes, the startup hooks and the
scheduler loop.
"""
import threading
from datetime import timedelta

from partner_sync.core.config import settings
from partner_sync.domain.services.job_scheduler import JobScheduler
from partner_sync.domain.services.partner_client import PartnerClient
from partner_sync.domain.services.token_cache import TokenCache

_lock = threading.Lock()
_token_cache: TokenCache | None = None
_partner_client: PartnerClient | None = None
_job_scheduler: JobScheduler | None = None


def get_token_cache() -> TokenCache:
    global _token_cache
    # double-checked locking
    if _token_cache is None:
        with _lock:
            if _token_cache is None:
                _token_cache = TokenCache(
                    safety_margin=timedelta(seconds=settings.TOKEN_SAFETY_MARGIN_SECONDS)
                )
    return _token_cache


def get_partner_client() -> PartnerClient:
    global _partner_client
    if _partner_client is None:
        cache = get_token_cache()
        with _lock:
            if _partner_client is None:
                _partner_client = PartnerClient(cache)
    return _partner_client


def get_job_scheduler() -> JobScheduler:
    global _job_scheduler
    if _job_scheduler is None:
        cache = get_token_cache()
        with _lock:
            if _job_scheduler is None:
                _job_scheduler = JobScheduler(
                    cache,
                    partner_base_url=settings.PARTNER_API_BASE_URL,
                    tick_seconds=settings.SCHEDULER_TICK_SECONDS,
                    job_timeout_seconds=settings.SCHEDULER_JOB_TIMEOUT_SECONDS,
                    response_preview_chars=settings.SCHEDULER_RESPONSE_PREVIEW_CHARS,
                )
    return _job_scheduler


def reset_runtime() -> None:
    """Drop every instance (for testing)"""
    global _token_cache, _partner_client, _job_scheduler
    with _lock:
        _token_cache = None
        _partner_client = None
        _job_scheduler = None

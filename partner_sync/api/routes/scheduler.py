"""
Scheduler and partner-auth operator endpoints.

Every endpoint works on the in-process scheduler registry and token cache,
so they only make sense on the API process that runs the scheduler loop.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from partner_sync.api.dependencies.admin_auth import require_admin_api_key
from partner_sync.core.logging import get_logger
from partner_sync.domain.services.job_scheduler import (
    JobExecutionResult,
    JobSchedule,
    ScheduledJob,
)
from partner_sync.domain.services.partner_client import AuthResult
from partner_sync.domain.services.runtime import (
    get_job_scheduler,
    get_partner_client,
    get_token_cache,
)
from partner_sync.domain.services.sync_config import reload_sync_jobs

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScheduleJobRequest(_CamelModel):
    job_id: str
    schedule: JobSchedule


class ExecutionResultResponse(_CamelModel):
    success: bool
    executed_at: datetime
    status_code: int | None = None
    response: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def from_result(cls, result: JobExecutionResult) -> "ExecutionResultResponse":
        return cls(
            success=result.success,
            executed_at=result.executed_at,
            status_code=result.status_code,
            response=result.response,
            error=result.error,
            duration_seconds=result.duration_seconds,
        )


class ScheduledJobResponse(_CamelModel):
    id: str
    schedule: JobSchedule
    next_execution: datetime
    created_at: datetime
    last_execution: datetime | None = None
    execution_count: int = 0
    is_active: bool = True
    source: str
    last_result: ExecutionResultResponse | None = None

    @classmethod
    def from_job(cls, job: ScheduledJob) -> "ScheduledJobResponse":
        return cls(
            id=job.id,
            schedule=job.schedule,
            next_execution=job.next_execution,
            created_at=job.created_at,
            last_execution=job.last_execution,
            execution_count=job.execution_count,
            is_active=job.is_active,
            source=job.source,
            last_result=(
                ExecutionResultResponse.from_result(job.last_result) if job.last_result else None
            ),
        )


class SchedulerStatusResponse(_CamelModel):
    running: bool
    tick_seconds: float
    last_tick_at: datetime | None = None
    tick_in_progress: bool
    in_flight: int
    job_count: int
    active_jobs: int
    next_execution: datetime | None = None


class ReloadResponse(_CamelModel):
    loaded: list[str]
    job_count: int


class AuthResponse(_CamelModel):
    success: bool
    method: str
    expires_at: datetime | None = None
    expires_in: int | None = None
    message: str = ""

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            success=result.success,
            method=result.method,
            expires_at=result.expires_at,
            expires_in=result.expires_in,
            message=result.message,
        )


class TokenStatusResponse(_CamelModel):
    """Token presence and expiry; the token value is never returned"""
    has_token: bool
    is_valid: bool
    token_type: str | None = None
    expires_at: datetime | None = None
    seconds_remaining: float | None = None


class LogoutResponse(_CamelModel):
    success: bool
    message: str


# ─── Jobs ───────────────────────────────────────────────────────────────────

@router.post(
    "/schedule",
    response_model=ScheduledJobResponse,
    summary="Add or update a scheduled job",
    description="Idempotent upsert keyed by jobId; counters and creation time survive updates.",
    responses={400: {"description": "Invalid schedule"}, **_AUTH_RESPONSES},
)
async def schedule_job(request: ScheduleJobRequest) -> ScheduledJobResponse:
    job = get_job_scheduler().add_or_update(request.job_id, request.schedule)
    return ScheduledJobResponse.from_job(job)


@router.get(
    "/schedule",
    response_model=list[ScheduledJobResponse],
    summary="List scheduled jobs",
    responses=_AUTH_RESPONSES,
)
async def list_jobs() -> list[ScheduledJobResponse]:
    return [ScheduledJobResponse.from_job(job) for job in get_job_scheduler().list_jobs()]


@router.get(
    "/schedule/{job_id}",
    response_model=ScheduledJobResponse,
    summary="Get a scheduled job",
    responses={404: {"description": "Job not found"}, **_AUTH_RESPONSES},
)
async def get_job(job_id: str) -> ScheduledJobResponse:
    return ScheduledJobResponse.from_job(get_job_scheduler().require(job_id))


@router.delete(
    "/schedule/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a scheduled job",
    responses={404: {"description": "Job not found"}, **_AUTH_RESPONSES},
)
async def remove_job(job_id: str) -> None:
    scheduler = get_job_scheduler()
    scheduler.require(job_id)
    scheduler.remove(job_id)


@router.post(
    "/schedule/{job_id}/run",
    response_model=ExecutionResultResponse,
    summary="Execute a job now",
    description="Runs the job outside its schedule; the outcome is recorded and the next execution recomputed.",
    responses={404: {"description": "Job not found"}, **_AUTH_RESPONSES},
)
async def run_job(job_id: str) -> ExecutionResultResponse:
    result = await get_job_scheduler().run_now(job_id)
    return ExecutionResultResponse.from_result(result)


@router.get(
    "/status",
    response_model=SchedulerStatusResponse,
    summary="Scheduler loop status",
    responses=_AUTH_RESPONSES,
)
async def scheduler_status() -> SchedulerStatusResponse:
    return SchedulerStatusResponse(**get_job_scheduler().status())


@router.post(
    "/sync-jobs/reload",
    response_model=ReloadResponse,
    summary="Reload sync jobs from the configuration file",
    responses={400: {"description": "Sync jobs file is invalid, loaded jobs kept"}, **_AUTH_RESPONSES},
)
async def reload_jobs() -> ReloadResponse:
    scheduler = get_job_scheduler()
    loaded = reload_sync_jobs(scheduler)
    return ReloadResponse(loaded=loaded, job_count=len(scheduler.list_jobs()))


# ─── Partner auth ───────────────────────────────────────────────────────────

@router.post(
    "/auth/login",
    response_model=AuthResponse,
    summary="Log in to the partner API",
    responses={503: {"description": "Partner API unavailable or login rejected"}, **_AUTH_RESPONSES},
)
async def partner_login() -> AuthResponse:
    return AuthResponse.from_result(await get_partner_client().login())


@router.post(
    "/auth/refresh-if-needed",
    response_model=AuthResponse,
    summary="Keep the partner token fresh",
    description="Keeps a token valid beyond the refresh threshold, else refreshes, else logs in.",
    responses={503: {"description": "Partner API unavailable or login rejected"}, **_AUTH_RESPONSES},
)
async def partner_refresh_if_needed() -> AuthResponse:
    return AuthResponse.from_result(await get_partner_client().refresh_if_needed())


@router.get(
    "/auth/token",
    response_model=TokenStatusResponse,
    summary="Partner token status",
    responses=_AUTH_RESPONSES,
)
async def partner_token_status() -> TokenStatusResponse:
    cache = get_token_cache()
    current = cache.peek()
    if current is None:
        return TokenStatusResponse(has_token=False, is_valid=False)
    return TokenStatusResponse(
        has_token=True,
        is_valid=cache.get_token() is not None,
        token_type=current.token_type,
        expires_at=current.expires_at,
        seconds_remaining=cache.seconds_remaining(),
    )


@router.post(
    "/auth/logout",
    response_model=LogoutResponse,
    summary="Log out of the partner API",
    responses=_AUTH_RESPONSES,
)
async def partner_logout() -> LogoutResponse:
    ok = await get_partner_client().logout()
    return LogoutResponse(
        success=ok,
        message="Logged out" if ok else "No active session or logout rejected; local token cleared",
    )

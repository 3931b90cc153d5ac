"""
In-memory scheduler for recurring HTTP sync jobs.

A single asyncio loop ticks every ``tick_seconds``. Each tick runs all due
jobs concurrently, each under its own timeout, and only then sleeps, so ticks
never overlap. After every execution attempt (success, HTTP error, timeout or
exception) the job's next execution time is recomputed.

All times are timezone-aware UTC.
"""
from __future__ import annotations

import asyncio
import calendar
import json
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from partner_sync.core.exceptions import InvalidScheduleError, ScheduledJobNotFoundError
from partner_sync.core.logging import get_logger, set_correlation_id
from partner_sync.domain.services.token_cache import TokenCache, utc_now

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60
ALREADY_COMPLETED_MARKER = "Request already completed"
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


class ScheduleKind(str, Enum):
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class DayOfWeek(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def index(self) -> int:
        """Monday == 0, as ``date.weekday()``"""
        return list(DayOfWeek).index(self)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobRequest(_CamelModel):
    method: str = "GET"
    url: str
    headers: dict[str, str] | None = None
    body: str | None = None
    use_auth_token: bool = False

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return (v or "GET").strip().upper()

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be an absolute http(s) URL")
        return v


class JobSchedule(_CamelModel):
    type: ScheduleKind = ScheduleKind.INTERVAL
    interval_seconds: int | None = None
    hour: int | None = None
    minute: int | None = None
    day_of_week: DayOfWeek | None = None
    day_of_month: int | None = None
    request: JobRequest

    @field_validator("type", "day_of_week", mode="before")
    @classmethod
    def lowercase_enum(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def validate_params(self) -> "JobSchedule":
        if self.interval_seconds is not None and self.interval_seconds <= 0:
            raise ValueError("intervalSeconds must be positive")
        if self.hour is not None and not 0 <= self.hour <= 23:
            raise ValueError("hour must be between 0 and 23")
        if self.minute is not None and not 0 <= self.minute <= 59:
            raise ValueError("minute must be between 0 and 59")
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise ValueError("dayOfMonth must be between 1 and 31")
        return self


@dataclass
class JobExecutionResult:
    success: bool
    executed_at: datetime
    status_code: int | None = None
    response: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class ScheduledJob:
    id: str
    schedule: JobSchedule
    next_execution: datetime
    created_at: datetime
    last_execution: datetime | None = None
    execution_count: int = 0
    is_active: bool = True
    last_result: JobExecutionResult | None = None
    source: str = "api"
    # Builds the request body at execution time (e.g. date windows)
    body_factory: Callable[[datetime], str] | None = field(default=None, repr=False)


# ----------------------------------------------------------------------
# Next-execution computation
# ----------------------------------------------------------------------

def _at(day: date, hour: int | None, minute: int | None) -> datetime:
    return datetime(day.year, day.month, day.day, hour or 0, minute or 0, tzinfo=timezone.utc)


def next_interval(now: datetime, interval_seconds: int | None) -> datetime:
    return now + timedelta(seconds=interval_seconds or DEFAULT_INTERVAL_SECONDS)


def next_daily(now: datetime, hour: int | None, minute: int | None) -> datetime:
    """Always tomorrow at hour:minute"""
    return _at(now.date() + timedelta(days=1), hour, minute)


def next_weekly(
    now: datetime, day_of_week: DayOfWeek | None, hour: int | None, minute: int | None
) -> datetime:
    target = (day_of_week or DayOfWeek.MONDAY).index
    days_ahead = (target - now.weekday()) % 7
    candidate = _at(now.date() + timedelta(days=days_ahead), hour, minute)
    if days_ahead == 0 and now >= candidate:
        candidate += timedelta(days=7)
    return candidate


def next_monthly(
    now: datetime, day_of_month: int | None, hour: int | None, minute: int | None
) -> datetime:
    """Next month, day clamped to that month's length"""
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    last_day = calendar.monthrange(year, month)[1]
    day = min(day_of_month or 1, last_day)
    return _at(date(year, month, day), hour, minute)


def compute_next_execution(schedule: JobSchedule, now: datetime) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    if schedule.type is ScheduleKind.INTERVAL:
        return next_interval(now, schedule.interval_seconds)
    if schedule.type is ScheduleKind.DAILY:
        return next_daily(now, schedule.hour, schedule.minute)
    if schedule.type is ScheduleKind.WEEKLY:
        return next_weekly(now, schedule.day_of_week, schedule.hour, schedule.minute)
    if schedule.type is ScheduleKind.MONTHLY:
        return next_monthly(now, schedule.day_of_month, schedule.hour, schedule.minute)
    raise InvalidScheduleError(
        f"Unsupported schedule type: {schedule.type}",
        details={"type": str(schedule.type)},
    )


def _host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class JobScheduler:
    """
    Registry of recurring jobs plus the loop that executes them.

    The registry is guarded by a threading lock that is never held across an
    ``await``; operator endpoints and the loop may touch it concurrently.
    """

    def __init__(
        self,
        token_cache: TokenCache,
        *,
        partner_base_url: str,
        tick_seconds: float = 10.0,
        job_timeout_seconds: float = 60.0,
        response_preview_chars: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.token_cache = token_cache
        self.partner_host = _host(partner_base_url)
        self.tick_seconds = tick_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.response_preview_chars = response_preview_chars
        self._now = clock

        self._lock = threading.Lock()
        self._jobs: dict[str, ScheduledJob] = {}

        self._tick_in_progress = False
        self._last_tick_at: datetime | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def add_or_update(
        self,
        job_id: str,
        schedule: JobSchedule,
        *,
        source: str = "api",
        body_factory: Callable[[datetime], str] | None = None,
    ) -> ScheduledJob:
        """
        Idempotent upsert keyed by ``job_id``.

        An update keeps ``execution_count``, ``last_execution``, ``created_at``
        and the last result of the existing job.
        """
        if not job_id or not job_id.strip():
            raise InvalidScheduleError("jobId must not be empty")

        now = self._now()
        next_execution = compute_next_execution(schedule, now)

        with self._lock:
            existing = self._jobs.get(job_id)
            job = ScheduledJob(
                id=job_id,
                schedule=schedule,
                next_execution=next_execution,
                created_at=existing.created_at if existing else now,
                last_execution=existing.last_execution if existing else None,
                execution_count=existing.execution_count if existing else 0,
                last_result=existing.last_result if existing else None,
                is_active=True,
                source=source,
                body_factory=body_factory,
            )
            self._jobs[job_id] = job

        logger.info(
            "Scheduled job registered" if existing is None else "Scheduled job updated",
            extra_data={
                "job_id": job_id,
                "type": schedule.type.value,
                "next_execution": next_execution.isoformat(),
                "source": source,
            },
        )
        return replace(job)

    def remove(self, job_id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(job_id, None)
        if removed is not None:
            logger.info("Scheduled job removed", extra_data={"job_id": job_id})
        return removed is not None

    def remove_by_source(self, source: str) -> list[str]:
        with self._lock:
            ids = [job_id for job_id, job in self._jobs.items() if job.source == source]
            for job_id in ids:
                del self._jobs[job_id]
        return ids

    def get(self, job_id: str) -> ScheduledJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def require(self, job_id: str) -> ScheduledJob:
        job = self.get(job_id)
        if job is None:
            raise ScheduledJobNotFoundError(job_id)
        return job

    def list_jobs(self) -> list[ScheduledJob]:
        with self._lock:
            jobs = [replace(job) for job in self._jobs.values()]
        return sorted(jobs, key=lambda j: j.id)

    def set_active(self, job_id: str, active: bool) -> ScheduledJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise ScheduledJobNotFoundError(job_id)
            job.is_active = active
            if active:
                job.next_execution = compute_next_execution(job.schedule, self._now())
            return replace(job)

    def due_jobs(self, now: datetime | None = None) -> list[ScheduledJob]:
        now = now or self._now()
        with self._lock:
            return [
                replace(job)
                for job in self._jobs.values()
                if job.is_active and job.next_execution <= now
            ]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _record(self, job_id: str, result: JobExecutionResult) -> None:
        finished = self._now()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.last_execution = result.executed_at
            job.execution_count += 1
            job.last_result = result
            job.next_execution = compute_next_execution(job.schedule, finished)

    def _build_headers(self, job: ScheduledJob) -> tuple[dict[str, str], str]:
        headers: dict[str, str] = {}
        content_type = "application/json"
        for name, value in (job.schedule.request.headers or {}).items():
            if name.lower() == "content-type":
                content_type = value
            else:
                headers[name] = value
        return headers, content_type

    async def _send(self, job: ScheduledJob, executed_at: datetime) -> JobExecutionResult:
        request = job.schedule.request
        headers, content_type = self._build_headers(job)

        if request.use_auth_token and _host(request.url) == self.partner_host:
            token = self.token_cache.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
            else:
                logger.warning(
                    "No valid partner token, running job without authorization",
                    extra_data={"job_id": job.id},
                )

        content = None
        if request.method in _BODY_METHODS:
            body = job.body_factory(executed_at) if job.body_factory else request.body
            if body is not None:
                content = body.encode("utf-8")
                headers["Content-Type"] = content_type

        started = time.monotonic()
        async with httpx.AsyncClient() as client:
            response = await client.request(
                request.method,
                request.url,
                headers=headers,
                content=content,
                timeout=self.job_timeout_seconds,
            )
        text = response.text or ""
        self._note_already_completed(job.id, text)

        return JobExecutionResult(
            success=response.is_success,
            executed_at=executed_at,
            status_code=response.status_code,
            response=_truncate(text, self.response_preview_chars),
            error=None if response.is_success else f"HTTP {response.status_code}",
            duration_seconds=round(time.monotonic() - started, 4),
        )

    def _note_already_completed(self, job_id: str, text: str) -> None:
        if ALREADY_COMPLETED_MARKER not in text:
            return
        try:
            body = json.loads(text)
        except ValueError:
            body = {}
        request_guid = body.get("requestGUID") if isinstance(body, dict) else None
        logger.info(
            "Partner reports request already completed",
            extra_data={"job_id": job_id, "request_guid": request_guid},
        )

    async def execute_job(self, job: ScheduledJob) -> JobExecutionResult:
        """
        Execute one job and record the outcome.

        Never raises except on cancellation; the next execution time is
        recomputed in every case.
        """
        executed_at = self._now()
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._send(job, executed_at), timeout=self.job_timeout_seconds
            )
        except asyncio.CancelledError:
            self._record(job.id, JobExecutionResult(
                success=False,
                executed_at=executed_at,
                error="cancelled",
                duration_seconds=round(time.monotonic() - started, 4),
            ))
            raise
        except asyncio.TimeoutError:
            result = JobExecutionResult(
                success=False,
                executed_at=executed_at,
                error=f"timed out after {self.job_timeout_seconds}s",
                duration_seconds=round(time.monotonic() - started, 4),
            )
        except Exception as e:
            result = JobExecutionResult(
                success=False,
                executed_at=executed_at,
                error=f"{type(e).__name__}: {e}",
                duration_seconds=round(time.monotonic() - started, 4),
            )

        self._record(job.id, result)

        log = logger.info if result.success else logger.warning
        log(
            "Scheduled job executed" if result.success else "Scheduled job failed",
            extra_data={
                "job_id": job.id,
                "status_code": result.status_code,
                "error": result.error,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def run_now(self, job_id: str) -> JobExecutionResult:
        """Execute a job immediately, outside its schedule"""
        return await self.execute_job(self.require(job_id))

    async def tick(self) -> list[JobExecutionResult]:
        """Run every due job once; a tick already in progress makes this a no-op"""
        if self._tick_in_progress:
            logger.debug("Scheduler tick skipped, previous tick still running")
            return []

        self._tick_in_progress = True
        try:
            now = self._now()
            self._last_tick_at = now
            due = self.due_jobs(now)
            if not due:
                return []

            tasks = [asyncio.create_task(self.execute_job(job)) for job in due]
            self._in_flight.update(tasks)
            try:
                results = await asyncio.gather(*tasks, return_exceptions=True)
            finally:
                self._in_flight.difference_update(tasks)

            for job, outcome in zip(due, results):
                if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                    logger.error(
                        "Scheduled job raised unexpectedly",
                        extra_data={"job_id": job.id, "error": str(outcome)},
                    )
            return [r for r in results if isinstance(r, JobExecutionResult)]
        finally:
            self._tick_in_progress = False

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        """Tick, then wait ``tick_seconds`` (or until stopped); the first tick is immediate"""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        set_correlation_id("scheduler")
        logger.info("Job scheduler started", extra_data={"tick_seconds": self.tick_seconds})
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("Scheduler tick failed", extra_data={"error": str(e)}, exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Job scheduler stopped")

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name="job-scheduler")

    async def stop(self, grace_seconds: float = 10.0) -> None:
        """Stop ticking and give in-flight jobs ``grace_seconds`` to finish"""
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()

        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Scheduler did not stop within grace period, cancelling",
                extra_data={"grace_seconds": grace_seconds, "in_flight": len(self._in_flight)},
            )
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        finally:
            self._task = None

    def status(self) -> dict[str, Any]:
        jobs = self.list_jobs()
        return {
            "running": self.is_running,
            "tick_seconds": self.tick_seconds,
            "last_tick_at": self._last_tick_at,
            "tick_in_progress": self._tick_in_progress,
            "in_flight": len(self._in_flight),
            "job_count": len(jobs),
            "active_jobs": sum(1 for j in jobs if j.is_active),
            "next_execution": min((j.next_execution for j in jobs if j.is_active), default=None),
        }

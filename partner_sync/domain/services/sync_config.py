"""
Sync job configuration.

The scheduler keeps jobs in memory only, so at startup the jobs are replayed
from a JSON file:

    {
      "productSync": [{"id": "...", "url": "...", "intervalSeconds": 7200, ...}],
      "orderSync":   [{"id": "...", "url": "...", "marketplace": "...", "dateRangeDays": 2, ...}]
    }

Order sync bodies carry a date window and are rebuilt on every execution.
"""
from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from partner_sync.core.config import ADMIN_API_KEY_HEADER, settings
from partner_sync.core.exceptions import AppException, SyncConfigError
from partner_sync.core.logging import get_logger
from partner_sync.domain.services.job_scheduler import (
    JobRequest,
    JobSchedule,
    JobScheduler,
    ScheduleKind,
)

logger = get_logger(__name__)

CONFIG_SOURCE = "sync-config"
BUILTIN_SOURCE = "builtin"
AUTH_REFRESH_JOB_ID = "partner-auth-refresh"
AUTH_REFRESH_INTERVAL_SECONDS = 2700

_DOTNET_DATE_TOKENS = (("yyyy", "%Y"), ("MM", "%m"), ("dd", "%d"), ("HH", "%H"), ("mm", "%M"), ("ss", "%S"))


def to_strftime(fmt: str) -> str:
    """Accept strftime formats as-is and translate ``yyyy-MM-dd`` style patterns"""
    if "%" in fmt:
        return fmt
    for token, directive in _DOTNET_DATE_TOKENS:
        fmt = fmt.replace(token, directive)
    return fmt


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ProductSyncConfig(_CamelModel):
    id: str
    name: str = ""
    is_active: bool = True
    interval_seconds: int = 7200
    method: str = "POST"
    url: str
    use_auth_token: bool = True
    headers: dict[str, str] = Field(default_factory=dict)
    body: str = ""
    marketplace: str = ""
    description: str = ""
    # Optional explicit schedule: {"type": "daily", "hour": 6, "minute": 0}
    schedule: dict[str, Any] | None = None

    def to_request(self, body: str | None = None) -> JobRequest:
        return JobRequest(
            method=self.method,
            url=self.url,
            headers=self.headers or None,
            body=self.body if body is None else body,
            use_auth_token=self.use_auth_token,
        )

    def to_schedule(self) -> JobSchedule:
        request = self.to_request()
        if self.schedule:
            return JobSchedule.model_validate({**self.schedule, "request": request})
        return JobSchedule(
            type=ScheduleKind.INTERVAL,
            interval_seconds=self.interval_seconds,
            request=request,
        )


class OrderSyncConfig(ProductSyncConfig):
    date_range_days: int = 2
    use_current_date_as_end_date: bool = True
    date_format: str = "%Y-%m-%d"
    additional_parameters: dict[str, Any] = Field(default_factory=dict)

    def date_window(self, today: date) -> tuple[date, date]:
        date_to = today if self.use_current_date_as_end_date else today - timedelta(days=1)
        return date_to - timedelta(days=self.date_range_days), date_to

    def build_body(self, now: datetime) -> str:
        date_from, date_to = self.date_window(now.date())
        fmt = to_strftime(self.date_format)
        body: dict[str, Any] = {
            "marketplace": self.marketplace,
            "dateFrom": date_from.strftime(fmt),
            "dateTo": date_to.strftime(fmt),
        }
        body.update(self.additional_parameters)
        return json.dumps(body)


class SyncJobsFile(_CamelModel):
    product_sync: list[dict[str, Any]] = Field(default_factory=list)
    order_sync: list[dict[str, Any]] = Field(default_factory=list)


def auth_refresh_schedule() -> JobSchedule:
    """Built-in job keeping the partner token fresh through this service's own endpoint"""
    headers = {ADMIN_API_KEY_HEADER: settings.ADMIN_API_KEY} if settings.ADMIN_API_KEY else None
    return JobSchedule(
        type=ScheduleKind.INTERVAL,
        interval_seconds=AUTH_REFRESH_INTERVAL_SECONDS,
        request=JobRequest(
            method="POST",
            url=f"{settings.SCHEDULER_SELF_BASE_URL.rstrip('/')}/api/cron/auth/refresh-if-needed",
            headers=headers,
            use_auth_token=False,
        ),
    )


def register_builtin_jobs(scheduler: JobScheduler) -> list[str]:
    scheduler.add_or_update(AUTH_REFRESH_JOB_ID, auth_refresh_schedule(), source=BUILTIN_SOURCE)
    return [AUTH_REFRESH_JOB_ID]


def _register(scheduler: JobScheduler, raw: dict[str, Any], model: type[ProductSyncConfig]) -> str | None:
    try:
        config = model.model_validate(raw)
        if not config.is_active:
            logger.info("Sync job inactive, skipped", extra_data={"job_id": config.id})
            return None
        schedule = config.to_schedule()
        body_factory = config.build_body if isinstance(config, OrderSyncConfig) else None
        scheduler.add_or_update(
            config.id, schedule, source=CONFIG_SOURCE, body_factory=body_factory
        )
        return config.id
    except (ValidationError, AppException, ValueError) as e:
        logger.error(
            "Invalid sync job configuration, skipped",
            extra_data={"job_id": raw.get("id") if isinstance(raw, dict) else None, "error": str(e)},
        )
        return None


def read_sync_jobs_file(path: str | Path | None = None) -> SyncJobsFile:
    """
    Parse the configuration file.

    A missing file is an empty configuration; an unreadable or malformed one
    raises ``SyncConfigError``.
    """
    path = Path(path or settings.SYNC_JOBS_FILE)
    if not path.exists():
        logger.info("Sync jobs file not found, no sync jobs configured", extra_data={"path": str(path)})
        return SyncJobsFile()

    try:
        return SyncJobsFile.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError) as e:
        logger.error(
            "Sync jobs file could not be parsed",
            extra_data={"path": str(path), "error": str(e)},
        )
        raise SyncConfigError(str(path), type(e).__name__) from e


def _register_all(scheduler: JobScheduler, data: SyncJobsFile) -> list[str]:
    return [
        job_id
        for job_id in (
            *(_register(scheduler, raw, ProductSyncConfig) for raw in data.product_sync),
            *(_register(scheduler, raw, OrderSyncConfig) for raw in data.order_sync),
        )
        if job_id
    ]


def load_sync_jobs(scheduler: JobScheduler, path: str | Path | None = None) -> list[str]:
    """
    Register every active, valid job from the configuration file.

    A missing or unreadable file registers nothing; one broken entry never
    stops the others from loading.
    """
    try:
        data = read_sync_jobs_file(path)
    except SyncConfigError:
        return []

    loaded = _register_all(scheduler, data)
    logger.info(
        "Sync jobs loaded",
        extra_data={"path": str(path or settings.SYNC_JOBS_FILE), "jobs": loaded},
    )
    return loaded


def reload_sync_jobs(scheduler: JobScheduler, path: str | Path | None = None) -> list[str]:
    """
    Replay the file; configured jobs keep their counters, dropped ones are removed.

    An unreadable file raises ``SyncConfigError`` and leaves the loaded jobs untouched.
    """
    loaded = _register_all(scheduler, read_sync_jobs_file(path))
    stale = [
        job.id
        for job in scheduler.list_jobs()
        if job.source == CONFIG_SOURCE and job.id not in loaded
    ]
    for job_id in stale:
        scheduler.remove(job_id)
    if stale:
        logger.info("Sync jobs unloaded", extra_data={"jobs": stale})
    return loaded

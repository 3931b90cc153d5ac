"""
Queue consumer side: processors per category and the batch loop.

``process_batch`` claims up to ``limit`` items, hands each one to the
processor registered for its category and records the outcome:
``mark_completed`` when the processor returns True, ``mark_failed`` when it
returns False or raises.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from partner_sync.core.config import settings
from partner_sync.core.logging import get_logger, log_async_operation
from partner_sync.db.models.queue_item import QueueItem
from partner_sync.domain.services.work_queue import WorkQueue

logger = get_logger(__name__)


class QueueProcessor(ABC):
    @abstractmethod
    async def process(self, item: QueueItem) -> bool:
        """Handle one claimed item; True marks it completed"""


class DiagnosticProcessor(QueueProcessor):
    """Unrecognized webhooks are only kept for inspection, so they are acknowledged"""

    async def process(self, item: QueueItem) -> bool:
        logger.info(
            "Diagnostic queue item acknowledged",
            extra_data={
                "item_id": item.id,
                "correlation_id": item.correlation_id,
                "change_type": item.change_type,
            },
        )
        return True


class ForwardingProcessor(QueueProcessor):
    """POST the item payload to a downstream URL"""

    def __init__(self, url: str, *, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout

    async def process(self, item: QueueItem) -> bool:
        headers = {
            "Content-Type": "application/json",
            "X-Queue-Item-Id": str(item.id),
            "X-Owner-Id": str(item.owner_id),
        }
        if item.correlation_id:
            headers["X-Correlation-ID"] = item.correlation_id
        if item.change_type:
            headers["X-Change-Type"] = item.change_type

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.url,
                content=item.payload.encode("utf-8"),
                headers=headers,
                timeout=self.timeout,
            )
        if not response.is_success:
            logger.warning(
                "Queue item forwarding rejected",
                extra_data={
                    "item_id": item.id,
                    "url": self.url,
                    "status_code": response.status_code,
                },
            )
        return response.is_success


def default_processors() -> dict[int, QueueProcessor]:
    processors: dict[int, QueueProcessor] = {
        category: ForwardingProcessor(url, timeout=settings.PARTNER_API_TIMEOUT_SECONDS)
        for category, url in settings.QUEUE_FORWARD_URLS.items()
    }
    processors[settings.QUEUE_DIAGNOSTIC_CATEGORY] = DiagnosticProcessor()
    return processors


@dataclass
class BatchReport:
    claimed: int = 0
    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "failed": self.failed,
        }


async def process_item(
    queue: WorkQueue, item: QueueItem, processors: dict[int, QueueProcessor]
) -> bool:
    """Run one already-claimed item and record its outcome"""
    claimed_at = item.processing_started_at
    processor = processors.get(item.category)
    if processor is None:
        await queue.mark_failed(
            item.id, f"No processor configured for category {item.category}", claimed_at=claimed_at
        )
        return False

    try:
        ok = await processor.process(item)
    except Exception as e:
        logger.error(
            "Queue processor raised",
            extra_data={"item_id": item.id, "category": item.category, "error": str(e)},
            exc_info=True,
        )
        await queue.mark_failed(item.id, f"{type(e).__name__}: {e}", claimed_at=claimed_at)
        return False

    if not ok:
        await queue.mark_failed(item.id, "Processor reported failure", claimed_at=claimed_at)
        return False
    return await queue.mark_completed(item.id, claimed_at=claimed_at)


@log_async_operation("queue batch")
async def process_batch(
    queue: WorkQueue,
    processors: dict[int, QueueProcessor] | None = None,
    *,
    limit: int | None = None,
) -> BatchReport:
    processors = default_processors() if processors is None else processors
    limit = limit or settings.QUEUE_BATCH_SIZE
    report = BatchReport()

    for _ in range(limit):
        item = await queue.claim_next()
        if item is None:
            break
        report.claimed += 1
        if await process_item(queue, item, processors):
            report.completed.append(item.id)
        else:
            report.failed.append(item.id)

    if report.claimed:
        logger.info("Queue batch processed", extra_data=report.to_dict())
    return report

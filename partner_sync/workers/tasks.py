"""
Celery Tasks for the Work Queue

Consumer side of the durable queue: claims eligible items and runs them
through the processor registered for their category, returns items stuck
in Processing to eligibility, and purges old completed items.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta

from partner_sync.workers.celery_app import celery_app
from partner_sync.core.config import settings
from partner_sync.core.logging import get_logger, set_correlation_id
from partner_sync.db.database import get_task_session
from partner_sync.domain.services.queue_processor import process_batch
from partner_sync.domain.services.work_queue import WorkQueue

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="partner_sync.workers.tasks.process_queue_items")
def process_queue_items(limit: int | None = None):
    """
    Process eligible queue items.
    This task runs periodically; failed items come back after their backoff.
    """

    async def _process():
        async with get_task_session() as db:
            report = await process_batch(WorkQueue(db), limit=limit)
            return report.to_dict()

    return run_async(_process())


@celery_app.task(name="partner_sync.workers.tasks.release_stale_queue_items")
def release_stale_queue_items(max_processing_seconds: int | None = None):
    """Return items stuck in Processing (worker crash, lost connection) to eligibility"""
    seconds = max_processing_seconds or settings.QUEUE_MAX_PROCESSING_SECONDS

    async def _release():
        async with get_task_session() as db:
            released = await WorkQueue(db).release_stale_processing(
                timedelta(seconds=seconds)
            )
            return {"released": released}

    return run_async(_release())


@celery_app.task(name="partner_sync.workers.tasks.cleanup_completed_queue_items")
def cleanup_completed_queue_items(days: int | None = None):
    """Retention sweep over completed queue items"""
    days = days or settings.QUEUE_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await WorkQueue(db).delete_completed_older_than(timedelta(days=days))
            return {"deleted": deleted}

    return run_async(_cleanup())

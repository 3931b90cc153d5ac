"""
Work Queue Service - durable, retryable work items

At-least-once delivery over the ``queue_items`` table:

- an item is eligible while ``attempts < max_attempts`` and it is either
  Pending (with no future ``next_retry_at``) or Failed with
  ``next_retry_at <= now``;
- ``mark_processing`` is a conditional UPDATE, so only one caller can claim
  a given item; ``mark_completed`` and ``mark_failed`` only apply while that
  claim still holds, so a cancel or a re-claim is never overwritten;
- attempts are counted when work starts, so a crash mid-processing still
  consumes an attempt.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy import and_, case, delete as sa_delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.core.config import settings
from partner_sync.core.exceptions import (
    QueueItemNotFoundError,
    QueueStorageError,
    QueueTransitionError,
)
from partner_sync.core.logging import get_logger, log_async_operation
from partner_sync.db.models.queue_item import QueueItem, QueueItemStatus, utcnow

logger = get_logger(__name__)

_MAX_ERROR_CHARS = 2000
_CLAIM_RETRIES = 5


def calculate_backoff(attempts: int, *, max_minutes: int = 64) -> timedelta:
    """
    Retry delay after ``attempts`` failed attempts.

    backoff(n) = min(2 ** (n - 1), max_minutes) minutes, n clamped to >= 1,
    so retries are spaced 1, 2, 4, ... minutes up to the ceiling.
    """
    if max_minutes <= 0:
        return timedelta(0)
    exponent = max(attempts, 1) - 1
    # Past this exponent 2 ** exponent already exceeds the ceiling
    if exponent >= max_minutes.bit_length():
        return timedelta(minutes=max_minutes)
    return timedelta(minutes=min(1 << exponent, max_minutes))


@dataclass
class NewQueueItem:
    """Input for :meth:`WorkQueue.enqueue`"""

    owner_id: int
    category: int
    payload: str
    raw_payload: str | None = None
    change_type: str | None = None
    correlation_id: str | None = None
    source: str | None = None
    priority: int = 0
    max_attempts: int | None = None


class WorkQueue:
    """
    Service for the durable work queue.

    Every mutating method commits its own transaction. No in-memory lock is
    held across database calls.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        max_backoff_minutes: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self._max_backoff_minutes = (
            settings.QUEUE_MAX_BACKOFF_MINUTES if max_backoff_minutes is None else max_backoff_minutes
        )
        self._now = clock

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def _build(self, item: NewQueueItem) -> QueueItem:
        return QueueItem(
            owner_id=item.owner_id,
            category=item.category,
            payload=item.payload,
            raw_payload=item.raw_payload,
            change_type=item.change_type,
            correlation_id=item.correlation_id,
            source=item.source,
            priority=item.priority,
            max_attempts=item.max_attempts or settings.QUEUE_MAX_ATTEMPTS,
            status=QueueItemStatus.PENDING,
            attempts=0,
            created_at=self._now(),
        )

    async def enqueue(self, item: NewQueueItem) -> int:
        """Insert a Pending item and return its id"""
        ids = await self.enqueue_many([item])
        return ids[0]

    async def enqueue_many(self, items: Iterable[NewQueueItem]) -> list[int]:
        """Insert several items in one transaction: all are stored or none"""
        rows = [self._build(item) for item in items]
        if not rows:
            return []
        try:
            self.db.add_all(rows)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            # str(e) carries the statement parameters, raw payloads included
            logger.error(
                "Queue insert failed",
                extra_data={"count": len(rows), "error_type": type(e).__name__},
            )
            raise QueueStorageError("enqueue") from e

        ids = [row.id for row in rows]
        logger.info(
            "Queue items enqueued",
            extra_data={
                "ids": ids,
                "categories": sorted({row.category for row in rows}),
                "correlation_id": rows[0].correlation_id,
            },
        )
        return ids

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def _eligible(self, now: datetime):
        return and_(
            QueueItem.attempts < QueueItem.max_attempts,
            or_(
                and_(
                    QueueItem.status == QueueItemStatus.PENDING,
                    or_(QueueItem.next_retry_at.is_(None), QueueItem.next_retry_at <= now),
                ),
                and_(
                    QueueItem.status == QueueItemStatus.FAILED,
                    QueueItem.next_retry_at.is_not(None),
                    QueueItem.next_retry_at <= now,
                ),
            ),
        )

    def _ready_query(self, now: datetime):
        return (
            select(QueueItem)
            .where(self._eligible(now))
            .order_by(QueueItem.priority.desc(), QueueItem.created_at, QueueItem.id)
        )

    async def dequeue(self) -> QueueItem | None:
        """Highest-priority eligible item, oldest first among equals; does not claim it"""
        items = await self.dequeue_batch(limit=1)
        return items[0] if items else None

    async def dequeue_batch(self, limit: int = 50) -> list[QueueItem]:
        # Read only; ownership is taken by mark_processing
        result = await self.db.execute(
            self._ready_query(self._now())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def mark_processing(self, item_id: int) -> bool:
        """
        Claim an eligible item: status -> Processing, attempts += 1.

        Returns False when the item is no longer eligible (claimed by another
        consumer, cancelled, or out of attempts).
        """
        now = self._now()
        result = await self.db.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, self._eligible(now))
            .values(
                status=QueueItemStatus.PROCESSING,
                attempts=QueueItem.attempts + 1,
                processing_started_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        claimed = result.rowcount == 1
        if not claimed:
            logger.debug("Queue item not claimable", extra_data={"item_id": item_id})
        return claimed

    async def claim_next(self) -> QueueItem | None:
        """Dequeue and claim in one call, retrying when a concurrent consumer wins"""
        for _ in range(_CLAIM_RETRIES):
            candidate = await self.dequeue()
            if candidate is None:
                return None
            if await self.mark_processing(candidate.id):
                return await self.get_by_id(candidate.id)
        return None

    def _owned_claim(self, item_id: int, claimed_at: datetime | None):
        """Rows still held by the claim that started at ``claimed_at``"""
        conditions = [QueueItem.id == item_id, QueueItem.status == QueueItemStatus.PROCESSING]
        if claimed_at is not None:
            conditions.append(QueueItem.processing_started_at == claimed_at)
        return and_(*conditions)

    def _retry_at(self, now: datetime):
        """next_retry_at for a failed attempt, computed from the row's own attempt count"""
        has_attempts_left = QueueItem.attempts < QueueItem.max_attempts
        steps = [
            (
                and_(has_attempts_left, QueueItem.attempts <= n),
                now + calculate_backoff(n, max_minutes=self._max_backoff_minutes),
            )
            for n in range(1, max(self._max_backoff_minutes, 0).bit_length() + 1)
        ]
        ceiling = now + calculate_backoff(
            max(self._max_backoff_minutes, 0).bit_length() + 1,
            max_minutes=self._max_backoff_minutes,
        )
        return case(*steps, (has_attempts_left, ceiling), else_=None)

    async def mark_completed(self, item_id: int, *, claimed_at: datetime | None = None) -> bool:
        """
        Processing -> Completed.

        Returns False when the item is no longer held by the caller's claim
        (cancelled, released as stale, or claimed again by another consumer).
        """
        now = self._now()
        result = await self.db.execute(
            update(QueueItem)
            .where(self._owned_claim(item_id, claimed_at))
            .values(
                status=QueueItemStatus.COMPLETED,
                processed_at=now,
                processing_started_at=None,
                next_retry_at=None,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            logger.warning(
                "Completion discarded, item not held by this claim",
                extra_data={"item_id": item_id},
            )
            return False
        return True

    async def mark_failed(
        self, item_id: int, error_message: str, *, claimed_at: datetime | None = None
    ) -> QueueItem | None:
        """
        Processing -> Failed for the attempt that holds the claim.

        Items with attempts left get ``next_retry_at = now + backoff(attempts)``;
        the rest stay Failed permanently with no retry time. Returns None when
        the item is no longer held by the caller's claim.
        """
        now = self._now()
        result = await self.db.execute(
            update(QueueItem)
            .where(self._owned_claim(item_id, claimed_at))
            .values(
                status=QueueItemStatus.FAILED,
                error_message=(error_message or "")[:_MAX_ERROR_CHARS],
                processed_at=now,
                processing_started_at=None,
                next_retry_at=self._retry_at(now),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            logger.warning(
                "Failure discarded, item not held by this claim",
                extra_data={"item_id": item_id},
            )
            return None

        item = await self.get_by_id(item_id)
        if item.next_retry_at is None:
            logger.warning(
                "Queue item failed permanently",
                extra_data={
                    "item_id": item.id,
                    "attempts": item.attempts,
                    "category": item.category,
                },
            )
        return item

    async def schedule_retry(self, item_id: int, at: datetime) -> QueueItem:
        """Make a non-terminal item eligible again no earlier than ``at``"""
        item = await self.require(item_id)
        if item.status in (QueueItemStatus.COMPLETED, QueueItemStatus.CANCELLED):
            raise QueueTransitionError(item_id, item.status.value, "rescheduled")
        item.status = QueueItemStatus.PENDING
        item.next_retry_at = at
        item.processing_started_at = None
        await self.db.commit()
        return item

    async def retry(self, item_id: int) -> QueueItem:
        """Operator reset of a Failed or Cancelled item: back to Pending with a fresh attempt budget"""
        item = await self.require(item_id)
        if item.status not in (QueueItemStatus.FAILED, QueueItemStatus.CANCELLED):
            raise QueueTransitionError(item_id, item.status.value, "retried")
        item.status = QueueItemStatus.PENDING
        item.attempts = 0
        item.next_retry_at = None
        item.processed_at = None
        await self.db.commit()
        logger.info("Queue item reset for retry", extra_data={"item_id": item_id})
        return item

    async def cancel(self, item_id: int) -> QueueItem:
        item = await self.require(item_id)
        if item.status in (QueueItemStatus.COMPLETED, QueueItemStatus.CANCELLED):
            raise QueueTransitionError(item_id, item.status.value, "cancelled")
        item.status = QueueItemStatus.CANCELLED
        item.processed_at = self._now()
        item.next_retry_at = None
        item.processing_started_at = None
        await self.db.commit()
        logger.info("Queue item cancelled", extra_data={"item_id": item_id})
        return item

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    @log_async_operation("queue retention sweep")
    async def delete_completed_older_than(self, age: timedelta) -> int:
        """Retention sweep; only Completed rows are ever deleted"""
        cutoff = self._now() - age
        result = await self.db.execute(
            sa_delete(QueueItem)
            .where(
                QueueItem.status == QueueItemStatus.COMPLETED,
                QueueItem.processed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        deleted = result.rowcount or 0
        logger.info(
            "Completed queue items purged",
            extra_data={"deleted": deleted, "cutoff": cutoff.isoformat()},
        )
        return deleted

    @log_async_operation("stale processing release")
    async def release_stale_processing(self, max_duration: timedelta) -> int:
        """
        Return items stuck in Processing longer than ``max_duration``.

        They become Failed and immediately eligible if attempts remain,
        otherwise terminal. The attempt that hung stays counted.
        """
        now = self._now()
        cutoff = now - max_duration
        result = await self.db.execute(
            update(QueueItem)
            .where(
                QueueItem.status == QueueItemStatus.PROCESSING,
                QueueItem.processing_started_at < cutoff,
            )
            .values(
                status=QueueItemStatus.FAILED,
                error_message=f"Processing exceeded {int(max_duration.total_seconds())}s",
                processing_started_at=None,
                processed_at=now,
                next_retry_at=case(
                    (QueueItem.attempts < QueueItem.max_attempts, now),
                    else_=None,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        released = result.rowcount or 0
        if released:
            logger.warning(
                "Released stale processing items",
                extra_data={"released": released, "max_duration_seconds": max_duration.total_seconds()},
            )
        return released

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_by_id(self, item_id: int) -> QueueItem | None:
        return await self.db.get(QueueItem, item_id, populate_existing=True)

    async def require(self, item_id: int) -> QueueItem:
        item = await self.get_by_id(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    async def get_by_correlation_id(self, correlation_id: str) -> list[QueueItem]:
        result = await self.db.execute(
            select(QueueItem)
            .where(QueueItem.correlation_id == correlation_id)
            .order_by(QueueItem.id)
        )
        return list(result.scalars().all())

    async def get_by_status(
        self, status: QueueItemStatus, *, skip: int = 0, take: int = 100
    ) -> list[QueueItem]:
        result = await self.db.execute(
            select(QueueItem)
            .where(QueueItem.status == status)
            .order_by(QueueItem.created_at, QueueItem.id)
            .offset(skip)
            .limit(take)
        )
        return list(result.scalars().all())

    async def list_by_category(
        self,
        category: int,
        *,
        status: QueueItemStatus | None = None,
        limit: int = 100,
    ) -> list[QueueItem]:
        query = select(QueueItem).where(QueueItem.category == category)
        if status is not None:
            query = query.where(QueueItem.status == status)
        result = await self.db.execute(
            query.order_by(QueueItem.created_at.desc(), QueueItem.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def count(self, status: QueueItemStatus | None = None) -> int:
        query = select(func.count(QueueItem.id))
        if status is not None:
            query = query.where(QueueItem.status == status)
        result = await self.db.execute(query)
        return int(result.scalar_one())

    async def statistics(self) -> dict:
        by_status = {s.value: 0 for s in QueueItemStatus}
        result = await self.db.execute(
            select(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status)
        )
        for status, count in result.all():
            by_status[QueueItemStatus(status).value] = count

        result = await self.db.execute(
            select(QueueItem.category, func.count(QueueItem.id)).group_by(QueueItem.category)
        )
        by_category = {str(category): count for category, count in result.all()}

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_category": by_category,
        }

"""
Work queue operator endpoints: statistics, listings per category and
manual retry/cancel of single items.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.api.dependencies.admin_auth import require_admin_api_key
from partner_sync.core.config import settings
from partner_sync.db.database import get_db
from partner_sync.db.models.queue_item import QueueItem, QueueItemStatus
from partner_sync.domain.services.work_queue import WorkQueue

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class QueueItemResponse(BaseModel):
    """Single queue item; the raw decrypted payload is not exposed"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    category: int
    status: QueueItemStatus
    payload: str
    change_type: str | None
    attempts: int
    max_attempts: int
    priority: int
    created_at: datetime | None
    processing_started_at: datetime | None
    processed_at: datetime | None
    next_retry_at: datetime | None
    error_message: str | None
    correlation_id: str | None
    source: str | None


class QueueStatisticsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    by_category: dict[str, int]


def _parse_status(value: str | None) -> QueueItemStatus | None:
    if not value:
        return None
    try:
        return QueueItemStatus(value.lower())
    except ValueError:
        valid = ", ".join(s.value for s in QueueItemStatus)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid status. Options: {valid}",
        )


async def _list(db: AsyncSession, category: int, item_status: str | None, limit: int) -> list[QueueItem]:
    return await WorkQueue(db).list_by_category(
        category, status=_parse_status(item_status), limit=limit
    )


@router.get(
    "/statistics",
    response_model=QueueStatisticsResponse,
    summary="Queue counts per status and category",
    responses=_AUTH_RESPONSES,
)
async def queue_statistics(
    db: AsyncSession = Depends(get_db),
) -> QueueStatisticsResponse:
    return QueueStatisticsResponse(**await WorkQueue(db).statistics())


@router.get(
    "/products",
    response_model=list[QueueItemResponse],
    summary="Product queue items, newest first",
    responses={400: {"description": "Invalid status filter"}, **_AUTH_RESPONSES},
)
async def list_product_items(
    db: AsyncSession = Depends(get_db),
    item_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[QueueItem]:
    return await _list(db, settings.QUEUE_PRODUCT_CATEGORY, item_status, limit)


@router.get(
    "/orders",
    response_model=list[QueueItemResponse],
    summary="Order queue items, newest first",
    responses={400: {"description": "Invalid status filter"}, **_AUTH_RESPONSES},
)
async def list_order_items(
    db: AsyncSession = Depends(get_db),
    item_status: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[QueueItem]:
    return await _list(db, settings.QUEUE_ORDER_CATEGORY, item_status, limit)


@router.get(
    "/{item_id}",
    response_model=QueueItemResponse,
    summary="Get a queue item",
    responses={404: {"description": "Queue item not found"}, **_AUTH_RESPONSES},
)
async def get_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
) -> QueueItem:
    return await WorkQueue(db).require(item_id)


@router.post(
    "/{item_id}/retry",
    response_model=QueueItemResponse,
    summary="Reset a failed or cancelled item to pending",
    description="Attempts start over from zero.",
    responses={
        404: {"description": "Queue item not found"},
        409: {"description": "Item is not failed or cancelled"},
        **_AUTH_RESPONSES,
    },
)
async def retry_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
) -> QueueItem:
    return await WorkQueue(db).retry(item_id)


@router.post(
    "/{item_id}/cancel",
    response_model=QueueItemResponse,
    summary="Cancel a queue item",
    responses={
        404: {"description": "Queue item not found"},
        409: {"description": "Item is already completed or cancelled"},
        **_AUTH_RESPONSES,
    },
)
async def cancel_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
) -> QueueItem:
    return await WorkQueue(db).cancel(item_id)

"""
Partner webhook endpoint.

Every answer carries ``success`` and ``message``; only a fully queued
delivery gets 200, so the partner redelivers anything else.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.core.config import settings
from partner_sync.core.exceptions import WebhookIntegrityError
from partner_sync.core.logging import get_logger, set_correlation_id
from partner_sync.db.database import get_db
from partner_sync.domain.payloads import WebhookEnvelope
from partner_sync.domain.services.ingestion import WebhookIngestionService
from partner_sync.domain.services.work_queue import WorkQueue

logger = get_logger(__name__)

router = APIRouter()

MISSING_SIGNATURE_MESSAGE = "Missing signature header"


class WebhookResponse(BaseModel):
    success: bool
    message: str
    guid: str | None = None
    error: str | None = None


def _failure(error: str, message: str, guid: str | None = None) -> JSONResponse:
    body = {"success": False, "error": error, "message": message}
    if guid:
        body["guid"] = guid
    return JSONResponse(status_code=400, content=body)


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Partner webhook (signed, encrypted)",
    description=(
        "Receives `{guid, webhookType, webhookData}` where webhookData is Base64 of "
        "IV + AES-256-CBC ciphertext, signed with HMAC-SHA256 in the configured header."
    ),
    responses={
        200: {"description": "Verified, decrypted and queued"},
        400: {"description": "Missing or bad signature, undecryptable or unqueueable payload"},
        429: {"description": "Rate limit exceeded"},
    },
)
async def partner_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    if not signature:
        logger.warning(
            "Webhook without signature header",
            extra_data={"header": settings.WEBHOOK_SIGNATURE_HEADER},
        )
        return PlainTextResponse(MISSING_SIGNATURE_MESSAGE, status_code=400)

    try:
        envelope = WebhookEnvelope.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        # json.JSONDecodeError is a ValueError
        logger.warning("Webhook body is not a valid envelope", extra_data={"error": str(e)[:200]})
        return _failure("Invalid request body", "Expected JSON with guid, webhookType and webhookData")

    set_correlation_id(envelope.guid)
    service = WebhookIngestionService(WorkQueue(db))

    try:
        result = await service.ingest(envelope, signature)
    except WebhookIntegrityError as e:
        return _failure(e.message, "Webhook rejected", envelope.guid)
    except Exception as e:
        logger.error(
            "Webhook processing raised",
            extra_data={"guid": envelope.guid, "error": str(e)},
            exc_info=True,
        )
        return _failure("Internal processing error", "Webhook could not be processed", envelope.guid)

    if not result.success:
        return _failure(
            result.error or "Processing failed",
            result.message or "Webhook could not be processed",
            envelope.guid,
        )

    return WebhookResponse(success=True, message=result.message, guid=envelope.guid)

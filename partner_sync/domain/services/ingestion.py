"""
Webhook ingestion pipeline: verify -> decrypt -> classify -> dispatch -> enqueue.
"""
from partner_sync.core.config import settings
from partner_sync.core.crypto import decrypt_if_encrypted
from partner_sync.core.exceptions import WebhookIntegrityError
from partner_sync.core.logging import get_logger
from partner_sync.domain.payloads import WebhookEnvelope
from partner_sync.domain.services.crypto_verifier import verify_and_decrypt
from partner_sync.domain.services.payload_classifier import classify
from partner_sync.domain.services.strategies import (
    ProcessingContext,
    ProcessingResult,
    StrategyRouter,
)
from partner_sync.domain.services.work_queue import WorkQueue

logger = get_logger(__name__)


def webhook_keys() -> tuple[str, str]:
    """(hmac_key, encryption_key) from settings, decrypted with the master key if needed"""
    master = settings.CONFIG_MASTER_KEY or None
    return (
        decrypt_if_encrypted(settings.WEBHOOK_HMAC_KEY, master),
        decrypt_if_encrypted(settings.WEBHOOK_ENCRYPTION_KEY, master),
    )


class WebhookIngestionService:
    def __init__(
        self,
        queue: WorkQueue,
        router: StrategyRouter | None = None,
        *,
        hmac_key: str | None = None,
        encryption_key: str | None = None,
    ):
        self.queue = queue
        self.router = router or StrategyRouter.default()
        if hmac_key is None or encryption_key is None:
            default_hmac, default_enc = webhook_keys()
            hmac_key = default_hmac if hmac_key is None else hmac_key
            encryption_key = default_enc if encryption_key is None else encryption_key
        self._hmac_key = hmac_key
        self._encryption_key = encryption_key

    async def ingest(self, envelope: WebhookEnvelope, signature: str) -> ProcessingResult:
        """
        Run one delivery through the pipeline.

        Raises:
            WebhookIntegrityError: signature or decryption failure (one
                public message for both).
        """
        plaintext, ok = verify_and_decrypt(
            envelope, signature, self._hmac_key, self._encryption_key
        )
        if not ok:
            logger.warning(
                "Webhook failed integrity check",
                extra_data={"guid": envelope.guid, "webhook_type": envelope.webhook_type},
            )
            raise WebhookIntegrityError()

        logger.info(
            "Webhook verified",
            extra_data={
                "guid": envelope.guid,
                "webhook_type": envelope.webhook_type,
                "payload_chars": len(plaintext),
            },
        )

        parsed = classify(plaintext, envelope.webhook_type)
        context = ProcessingContext(
            guid=envelope.guid,
            webhook_type=envelope.webhook_type,
            decrypted_json=plaintext,
        )
        result = await self.router.dispatch(parsed, context, self.queue)

        if result.success:
            logger.info(
                "Webhook processed",
                extra_data={
                    "guid": envelope.guid,
                    "strategy": result.strategy,
                    "items": result.created_items,
                },
            )
        return result

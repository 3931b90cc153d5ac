"""
Webhook processing strategies.

Each strategy turns one classified payload into queue items. The router picks
the first strategy whose ``can_process`` accepts the payload and falls back to
the diagnostic strategy, so an event is never dropped. Strategy failures come
back as ``ProcessingResult(success=False)``; nothing escapes ``dispatch``.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from partner_sync.core.config import settings
from partner_sync.core.exceptions import QueueStorageError
from partner_sync.core.logging import get_logger
from partner_sync.domain.payloads import ParseResult
from partner_sync.domain.services.work_queue import NewQueueItem, WorkQueue

logger = get_logger(__name__)

STORAGE_ERROR = "Work queue unavailable"
INTERNAL_ERROR = "Internal processing error"


@dataclass(frozen=True)
class RoutingSettings:
    default_owner_id: int
    second_owner_id: int
    product_category: int
    order_category: int
    diagnostic_category: int
    second_owner_pattern: str

    @classmethod
    def from_settings(cls) -> "RoutingSettings":
        return cls(
            default_owner_id=settings.QUEUE_DEFAULT_OWNER_ID,
            second_owner_id=settings.QUEUE_SECOND_OWNER_ID,
            product_category=settings.QUEUE_PRODUCT_CATEGORY,
            order_category=settings.QUEUE_ORDER_CATEGORY,
            diagnostic_category=settings.QUEUE_DIAGNOSTIC_CATEGORY,
            second_owner_pattern=settings.ORDER_SECOND_OWNER_PATTERN,
        )


@dataclass
class ProcessingContext:
    guid: str
    webhook_type: str
    decrypted_json: str


@dataclass
class ProcessingResult:
    success: bool
    strategy: str
    created_items: list[int] = field(default_factory=list)
    message: str = ""
    error: str | None = None


class WebhookStrategy(ABC):
    name = "base"

    def __init__(self, routing: RoutingSettings):
        self.routing = routing

    @abstractmethod
    def can_process(self, parsed: ParseResult) -> bool:
        ...

    @abstractmethod
    def build_items(self, parsed: ParseResult, context: ProcessingContext) -> list[NewQueueItem]:
        ...

    async def process(
        self, parsed: ParseResult, context: ProcessingContext, queue: WorkQueue
    ) -> ProcessingResult:
        try:
            items = self.build_items(parsed, context)
            ids = await queue.enqueue_many(items)
        except QueueStorageError:
            logger.error(
                "Webhook items could not be stored",
                extra_data={"strategy": self.name, "guid": context.guid},
            )
            return self._failed(STORAGE_ERROR)
        except Exception as e:
            logger.error(
                "Webhook strategy failed",
                extra_data={"strategy": self.name, "guid": context.guid, "error_type": type(e).__name__},
                exc_info=True,
            )
            return self._failed(INTERNAL_ERROR)

        return ProcessingResult(
            success=True,
            strategy=self.name,
            created_items=ids,
            message=f"{self.name} webhook queued ({len(ids)} item(s))",
        )

    def _failed(self, error: str) -> ProcessingResult:
        return ProcessingResult(
            success=False,
            strategy=self.name,
            message=f"{self.name} webhook could not be queued",
            error=error,
        )


class ProductWebhookStrategy(WebhookStrategy):
    """Products concern both owners: one item per owner"""

    name = "product"

    def can_process(self, parsed: ParseResult) -> bool:
        return parsed.product is not None

    def build_items(self, parsed: ParseResult, context: ProcessingContext) -> list[NewQueueItem]:
        payload = parsed.product.to_json()
        owners = (self.routing.default_owner_id, self.routing.second_owner_id)
        return [
            NewQueueItem(
                owner_id=owner_id,
                category=self.routing.product_category,
                payload=payload,
                raw_payload=context.decrypted_json,
                change_type=parsed.change_type or context.webhook_type,
                correlation_id=context.guid,
                source=f"webhook:{self.name}",
            )
            for owner_id in owners
        ]


class OrderWebhookStrategy(WebhookStrategy):
    """Orders belong to one owner, chosen by marketplace name"""

    name = "order"

    def can_process(self, parsed: ParseResult) -> bool:
        return parsed.order is not None

    def owner_for(self, marketplace: str | None) -> int:
        pattern = self.routing.second_owner_pattern.strip().lower()
        if pattern and marketplace and pattern in marketplace.lower():
            return self.routing.second_owner_id
        return self.routing.default_owner_id

    def build_items(self, parsed: ParseResult, context: ProcessingContext) -> list[NewQueueItem]:
        order = parsed.order
        return [
            NewQueueItem(
                owner_id=self.owner_for(order.marketplace),
                category=self.routing.order_category,
                payload=order.to_json(),
                raw_payload=context.decrypted_json,
                change_type=parsed.change_type,
                correlation_id=context.guid,
                source=f"webhook:{self.name}",
            )
        ]


class UnknownWebhookStrategy(WebhookStrategy):
    """Diagnostic sink for payloads no other strategy understands"""

    name = "unknown"

    def can_process(self, parsed: ParseResult) -> bool:
        return not parsed.is_recognized

    def build_items(self, parsed: ParseResult, context: ProcessingContext) -> list[NewQueueItem]:
        logger.warning(
            "Unrecognized webhook stored for inspection",
            extra_data={
                "guid": context.guid,
                "webhook_type": context.webhook_type,
                "payload_chars": len(context.decrypted_json),
            },
        )
        diagnostic = {
            "guid": context.guid,
            "webhookType": context.webhook_type,
            "reason": "unrecognized payload shape",
        }
        return [
            NewQueueItem(
                owner_id=self.routing.default_owner_id,
                category=self.routing.diagnostic_category,
                payload=json.dumps(diagnostic),
                raw_payload=context.decrypted_json,
                change_type=parsed.change_type or context.webhook_type,
                correlation_id=context.guid,
                source=f"webhook:{self.name}",
            )
        ]


class StrategyRouter:
    """Chooses exactly one strategy per parse result"""

    def __init__(
        self,
        strategies: list[WebhookStrategy],
        fallback: WebhookStrategy,
    ):
        self.strategies = strategies
        self.fallback = fallback

    @classmethod
    def default(cls, routing: RoutingSettings | None = None) -> "StrategyRouter":
        routing = routing or RoutingSettings.from_settings()
        return cls(
            strategies=[ProductWebhookStrategy(routing), OrderWebhookStrategy(routing)],
            fallback=UnknownWebhookStrategy(routing),
        )

    def select(self, parsed: ParseResult) -> WebhookStrategy:
        for strategy in self.strategies:
            if strategy.can_process(parsed):
                return strategy
        return self.fallback

    async def dispatch(
        self, parsed: ParseResult, context: ProcessingContext, queue: WorkQueue
    ) -> ProcessingResult:
        strategy = self.select(parsed)
        logger.info(
            "Dispatching webhook",
            extra_data={"guid": context.guid, "strategy": strategy.name, "kind": parsed.kind.value},
        )
        return await strategy.process(parsed, context, queue)

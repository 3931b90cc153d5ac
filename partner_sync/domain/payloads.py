"""
Webhook payload shapes.

The partner sends camelCase JSON. Only the fields routing depends on are
declared; everything else is kept as extra data and survives serialization.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PartnerShape(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ProductShape(PartnerShape):
    """Product master data change"""

    id: int | None = None
    sku: str | None = None
    name: str | None = None
    ean: str | None = None
    marketplace: str | None = None
    is_active: bool | None = None
    weight: Decimal | None = None
    type: str | None = None


class OrderShape(PartnerShape):
    """Marketplace order change"""

    id: int | None = None
    number: str | None = None
    marketplace: str | None = None
    master_system_id: int | None = None
    order_value: Decimal | None = None
    order_items: list[dict[str, Any]] = Field(default_factory=list)


class ShapeKind(str, Enum):
    PRODUCT = "product"
    ORDER = "order"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ParseResult:
    """Classification outcome: at most one of ``product`` / ``order`` is set"""

    product: ProductShape | None = None
    order: OrderShape | None = None
    change_type: str | None = None

    def __post_init__(self) -> None:
        if self.product is not None and self.order is not None:
            raise ValueError("ParseResult cannot carry both a product and an order")

    @property
    def kind(self) -> ShapeKind:
        if self.product is not None:
            return ShapeKind.PRODUCT
        if self.order is not None:
            return ShapeKind.ORDER
        return ShapeKind.UNRECOGNIZED

    @property
    def is_recognized(self) -> bool:
        return self.kind is not ShapeKind.UNRECOGNIZED

    @property
    def shape(self) -> Union[ProductShape, OrderShape, None]:
        return self.product if self.product is not None else self.order


class WebhookEnvelope(BaseModel):
    """Inbound webhook body"""

    guid: str
    webhook_type: str = Field(alias="webhookType")
    webhook_data: str = Field(alias="webhookData")

    model_config = ConfigDict(populate_by_name=True)

    def signed_message(self) -> bytes:
        """Bytes covered by the partner's HMAC"""
        return f"{self.guid}{self.webhook_type}{self.webhook_data}".encode("utf-8")

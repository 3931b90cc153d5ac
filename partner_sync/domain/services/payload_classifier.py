"""
Payload classification.

The partner is inconsistent about wrapping: some deliveries nest the entity
under ``productData``/``orderData``, others send it bare. The ladder below
tries the unambiguous forms first and never raises.
"""
import json
from typing import Any, Callable

from pydantic import ValidationError

from partner_sync.core.logging import get_logger
from partner_sync.domain.payloads import OrderShape, ParseResult, ProductShape

logger = get_logger(__name__)

Step = Callable[[dict[str, Any], str], ParseResult | None]


def _as_product(data: Any) -> ProductShape | None:
    if not isinstance(data, dict):
        return None
    try:
        return ProductShape.model_validate(data)
    except ValidationError:
        return None


def _as_order(data: Any) -> OrderShape | None:
    if not isinstance(data, dict):
        return None
    try:
        return OrderShape.model_validate(data)
    except ValidationError:
        return None


def _change_type(root: dict[str, Any]) -> str | None:
    value = root.get("changeType")
    return value if isinstance(value, str) else None


def _nested_product(root: dict[str, Any], declared_kind: str) -> ParseResult | None:
    product = _as_product(root.get("productData"))
    if product is None:
        return None
    return ParseResult(product=product, change_type=_change_type(root))


def _nested_order(root: dict[str, Any], declared_kind: str) -> ParseResult | None:
    order = _as_order(root.get("orderData"))
    if order is None:
        return None
    return ParseResult(order=order, change_type=_change_type(root))


def _declared_product(root: dict[str, Any], declared_kind: str) -> ParseResult | None:
    if "product" not in declared_kind.lower():
        return None
    product = _as_product(root)
    return ParseResult(product=product, change_type=_change_type(root)) if product is not None else None


def _declared_order(root: dict[str, Any], declared_kind: str) -> ParseResult | None:
    if "order" not in declared_kind.lower():
        return None
    order = _as_order(root)
    return ParseResult(order=order, change_type=_change_type(root)) if order is not None else None


def _fallback_product(root: dict[str, Any], declared_kind: str) -> ParseResult | None:
    # Bare payloads need their identifying field to count as a product
    product = _as_product(root)
    if product is None or product.sku is None:
        return None
    return ParseResult(product=product, change_type=_change_type(root))


def _fallback_order(root: dict[str, Any], declared_kind: str) -> ParseResult | None:
    order = _as_order(root)
    if order is None or order.number is None:
        return None
    return ParseResult(order=order, change_type=_change_type(root))


CLASSIFICATION_STEPS: tuple[tuple[str, Step], ...] = (
    ("nested_product", _nested_product),
    ("nested_order", _nested_order),
    ("declared_product", _declared_product),
    ("declared_order", _declared_order),
    ("fallback_product", _fallback_product),
    ("fallback_order", _fallback_order),
)


def classify(plaintext_json: str, declared_kind: str | None) -> ParseResult:
    """
    Classify decrypted webhook JSON as a product, an order or unrecognized.

    Total: malformed JSON, a non-object root and unexpected errors all
    resolve to an unrecognized result.
    """
    try:
        root = json.loads(plaintext_json)
    except (TypeError, ValueError, RecursionError):
        logger.warning("Webhook payload is not valid JSON")
        return ParseResult()

    if not isinstance(root, dict):
        logger.warning(
            "Webhook payload root is not an object",
            extra_data={"root_type": type(root).__name__},
        )
        return ParseResult()

    kind = declared_kind or ""
    for name, step in CLASSIFICATION_STEPS:
        try:
            result = step(root, kind)
        except Exception as e:
            logger.debug(
                "Classification step failed",
                extra_data={"step": name, "error": str(e)},
            )
            continue
        if result is not None:
            logger.debug(
                "Webhook payload classified",
                extra_data={"step": name, "kind": result.kind.value},
            )
            return result

    logger.warning(
        "Webhook payload shape not recognized",
        extra_data={"declared_kind": kind},
    )
    return ParseResult(change_type=_change_type(root))

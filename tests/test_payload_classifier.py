"""
Tests for webhook payload classification
"""
import json

import pytest

from partner_sync.domain.payloads import ParseResult, ProductShape, OrderShape, ShapeKind
from partner_sync.domain.services.payload_classifier import classify


class TestNestedPayloads:
    @pytest.mark.unit
    def test_nested_product(self):
        result = classify('{"productData": {"sku": "X1", "id": 7}}', "ProductChanged")

        assert result.kind is ShapeKind.PRODUCT
        assert result.product.sku == "X1"
        assert result.product.id == 7
        assert result.order is None

    @pytest.mark.unit
    def test_nested_order(self):
        payload = {
            "changeType": "OrderCreated",
            "orderData": {"id": 5, "number": "ZA/1/2025", "marketplace": "Allegro"},
        }
        result = classify(json.dumps(payload), "Order")

        assert result.kind is ShapeKind.ORDER
        assert result.order.number == "ZA/1/2025"
        assert result.change_type == "OrderCreated"

    @pytest.mark.unit
    def test_product_data_wins_over_order_data(self):
        payload = {"productData": {"sku": "X1"}, "orderData": {"number": "1"}}
        assert classify(json.dumps(payload), "").kind is ShapeKind.PRODUCT

    @pytest.mark.unit
    def test_nested_data_wins_over_declared_kind(self):
        result = classify('{"orderData": {"number": "A-1"}}', "ProductChanged")
        assert result.kind is ShapeKind.ORDER

    @pytest.mark.unit
    def test_invalid_nested_product_falls_through(self):
        # weight is not a number, so productData is not a product
        payload = {"productData": {"sku": "X1", "weight": "heavy"}, "orderData": {"number": "7"}}
        assert classify(json.dumps(payload), "").kind is ShapeKind.ORDER

    @pytest.mark.unit
    def test_camel_case_fields_are_mapped(self):
        result = classify(
            '{"orderData": {"number": "A", "masterSystemId": 12, "orderValue": "10.50"}}', ""
        )
        assert result.order.master_system_id == 12
        assert str(result.order.order_value) == "10.50"


class TestDeclaredAndFallback:
    @pytest.mark.unit
    def test_declared_product(self):
        result = classify('{"id": 3, "name": "Box"}', "productUpdated")
        assert result.kind is ShapeKind.PRODUCT
        assert result.product.name == "Box"

    @pytest.mark.unit
    def test_declared_order(self):
        result = classify('{"id": 3, "marketplace": "Zawisza"}', "ORDER_CHANGED")
        assert result.kind is ShapeKind.ORDER
        assert result.order.marketplace == "Zawisza"

    @pytest.mark.unit
    def test_bare_product_without_declared_kind(self):
        assert classify('{"sku": "Y2"}', "Something").kind is ShapeKind.PRODUCT

    @pytest.mark.unit
    def test_bare_order_without_declared_kind(self):
        assert classify('{"number": "Z/9"}', None).kind is ShapeKind.ORDER

    @pytest.mark.unit
    def test_unknown_fields_are_kept(self):
        result = classify('{"productData": {"sku": "X1", "color": "red"}}', "")
        assert json.loads(result.product.to_json()) == {"sku": "X1", "color": "red"}


class TestUnrecognized:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            "",
            "not json",
            "{",
            "[1, 2, 3]",
            '"just a string"',
            "null",
            "42",
            "{}",
            '{"foo": "bar"}',
            '{"productData": "not an object"}',
        ],
    )
    def test_unrecognized_never_raises(self, payload):
        result = classify(payload, "Unknown")
        assert isinstance(result, ParseResult)
        assert result.kind is ShapeKind.UNRECOGNIZED

    @pytest.mark.unit
    def test_unrecognized_keeps_change_type(self):
        result = classify('{"changeType": "Ping"}', "Heartbeat")
        assert not result.is_recognized
        assert result.change_type == "Ping"

    @pytest.mark.unit
    def test_deeply_nested_json(self):
        payload = "[" * 100000 + "]" * 100000
        assert classify(payload, "").kind is ShapeKind.UNRECOGNIZED


class TestParseResult:
    @pytest.mark.unit
    def test_only_one_variant(self):
        with pytest.raises(ValueError):
            ParseResult(product=ProductShape(sku="a"), order=OrderShape(number="b"))

    @pytest.mark.unit
    def test_shape(self):
        product = ProductShape(sku="a")
        assert ParseResult(product=product).shape is product
        assert ParseResult().shape is None

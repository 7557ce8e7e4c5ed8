"""
Tests for the order aggregate state machine and order numbers.
"""

import re
from types import SimpleNamespace
from uuid import uuid4

import pytest

from storefront.aggregate import (
    ADDRESS_FIELDS,
    OrderAggregate,
    OrderStatus,
    generate_order_number,
)
from storefront.errors import InvalidTransition


def _row(status="processing", **overrides):
    values = {
        "id": uuid4(),
        "user_id": uuid4(),
        "order_number": "ORD-20260101-ABCDEF12",
        "status": status,
        "subtotal": 25.0,
        "tax": 2.5,
        "total": 27.5,
        "error": None,
        "created_at": "2026-01-01 12:00:00+00:00",
        **{field: None for field in ADDRESS_FIELDS},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class TestTransitions:
    @pytest.mark.parametrize("target", [OrderStatus.COMPLETED, OrderStatus.FAILED])
    def test_processing_to_terminal(self, target):
        order = OrderAggregate.from_row(_row())

        order.transition(target)

        assert order.status is target
        assert order.is_terminal

    @pytest.mark.parametrize("current", ["completed", "failed"])
    @pytest.mark.parametrize("target", list(OrderStatus))
    def test_terminal_statuses_are_final(self, current, target):
        order = OrderAggregate.from_row(_row(status=current))

        with pytest.raises(InvalidTransition):
            order.transition(target)

        assert order.status == OrderStatus(current)

    def test_processing_to_processing_is_rejected(self):
        order = OrderAggregate.from_row(_row())

        with pytest.raises(InvalidTransition):
            order.transition(OrderStatus.PROCESSING)

        assert not order.is_terminal


class TestFromRow:
    def test_money_is_decimal(self):
        order = OrderAggregate.from_row(_row())

        assert str(order.subtotal) == "25.00"
        assert str(order.tax) == "2.50"
        assert str(order.total) == "27.50"

    def test_to_dict_includes_address_snapshot(self):
        order = OrderAggregate.from_row(_row(shipping_city="Springfield"))

        data = order.to_dict()

        assert data["status"] == "processing"
        assert data["shipping_city"] == "Springfield"
        assert data["total"] == 27.5
        assert set(ADDRESS_FIELDS) <= set(data)


def test_order_number_format():
    number = generate_order_number()

    assert re.fullmatch(r"ORD-\d{8}-[0-9A-F]{8}", number)


def test_order_numbers_differ():
    assert len({generate_order_number() for _ in range(50)}) == 50

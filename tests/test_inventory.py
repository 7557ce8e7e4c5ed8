"""
Tests for the inventory ledger: availability checks, the conditional
decrement, compensating increments and the low-stock crossing signal.
"""

from uuid import uuid4

import pytest

from storefront import inventory
from storefront.errors import InsufficientStock, ProductNotFound
from tests.fixtures import create_product, stock_of


@pytest.mark.asyncio
class TestCheckAvailability:
    async def test_true_when_stock_covers_quantity(self, session_factory):
        product_id = await create_product(session_factory, stock=3)
        async with session_factory() as session:
            assert await inventory.check_availability(session, product_id, 3)
            assert not await inventory.check_availability(session, product_id, 4)

    async def test_unknown_product(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ProductNotFound):
                await inventory.check_availability(session, uuid4(), 1)


@pytest.mark.asyncio
class TestDecrement:
    async def test_decrements_stock(self, session_factory):
        product_id = await create_product(session_factory, stock=10)
        async with session_factory() as session:
            change = await inventory.decrement(session, product_id, 4, threshold=5)
            await session.commit()

        assert change.previous == 10
        assert change.current == 6
        assert not change.crossed_low_stock
        assert await stock_of(session_factory, product_id) == 6

    async def test_insufficient_stock_leaves_stock_untouched(self, session_factory):
        product_id = await create_product(session_factory, name="Lamp", stock=3)
        async with session_factory() as session:
            with pytest.raises(InsufficientStock) as excinfo:
                await inventory.decrement(session, product_id, 10)
            await session.commit()

        assert excinfo.value.available == 3
        assert excinfo.value.product_id == str(product_id)
        assert "Lamp" in str(excinfo.value)
        assert await stock_of(session_factory, product_id) == 3

    async def test_can_take_the_last_unit(self, session_factory):
        product_id = await create_product(session_factory, stock=1)
        async with session_factory() as session:
            change = await inventory.decrement(session, product_id, 1)
            await session.commit()

        assert change.current == 0
        assert not change.crossed_low_stock

    async def test_unknown_product(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ProductNotFound):
                await inventory.decrement(session, uuid4(), 1)

    async def test_rejects_non_positive_quantity(self, session_factory):
        product_id = await create_product(session_factory)
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await inventory.decrement(session, product_id, 0)

    async def test_rollback_discards_decrement(self, session_factory):
        product_id = await create_product(session_factory, stock=5)
        async with session_factory() as session:
            await inventory.decrement(session, product_id, 2)
            await session.rollback()

        assert await stock_of(session_factory, product_id) == 5

    async def test_reports_threshold_crossing(self, session_factory):
        product_id = await create_product(session_factory, stock=10)
        async with session_factory() as session:
            change = await inventory.decrement(session, product_id, 7, threshold=5)
            await session.commit()

        assert change.crossed_low_stock


@pytest.mark.parametrize(
    ("previous", "current", "expected"),
    [
        (10, 3, True),
        (10, 5, True),
        (6, 5, True),
        (5, 4, False),
        (3, 2, False),
        (10, 0, False),
        (3, 10, False),
        (10, 6, False),
    ],
)
def test_crossed_low_stock(previous, current, expected):
    assert inventory.crossed_low_stock(previous, current, 5) is expected


@pytest.mark.asyncio
class TestIncrementAndSetStock:
    async def test_increment(self, session_factory):
        product_id = await create_product(session_factory, stock=2)
        async with session_factory() as session:
            change = await inventory.increment(session, product_id, 5)
            await session.commit()

        assert (change.previous, change.current) == (2, 7)
        assert await stock_of(session_factory, product_id) == 7

    async def test_increment_unknown_product(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ProductNotFound):
                await inventory.increment(session, uuid4(), 1)

    async def test_set_stock_clamps_negative_to_zero(self, session_factory):
        product_id = await create_product(session_factory, stock=4)
        async with session_factory() as session:
            change = await inventory.set_stock(session, product_id, -3)
            await session.commit()

        assert change.current == 0
        assert await stock_of(session_factory, product_id) == 0

    async def test_set_stock_reports_crossing(self, session_factory):
        product_id = await create_product(session_factory, stock=15)
        async with session_factory() as session:
            change = await inventory.set_stock(session, product_id, 8, threshold=10)
            await session.commit()

        assert change.crossed_low_stock


@pytest.mark.asyncio
class TestLowStock:
    async def test_low_stock_products(self, session_factory):
        low = await create_product(session_factory, name="Low", stock=2)
        await create_product(session_factory, name="Plenty", stock=50)
        await create_product(session_factory, name="Empty", stock=0)

        async with session_factory() as session:
            products = await inventory.low_stock_products(session, threshold=5)

        assert [p["id"] for p in products] == [str(low)]

    async def test_notify_publishes_only_on_crossing(self, session_factory, redis):
        product_id = await create_product(session_factory, stock=10)
        async with session_factory() as session:
            crossed = await inventory.decrement(session, product_id, 6, threshold=5)
            below = await inventory.decrement(session, product_id, 1, threshold=5)
            await session.commit()

        await inventory.notify_low_stock(redis, crossed, threshold=5)
        await inventory.notify_low_stock(redis, below, threshold=5)

        events = redis.events(inventory.INVENTORY_CHANNEL)
        assert len(events) == 1
        assert events[0]["event_type"] == "LowStockCrossed"
        assert events[0]["data"]["previous_stock"] == 10
        assert events[0]["data"]["current_stock"] == 4

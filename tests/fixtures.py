"""
Data helpers and test doubles shared by the storefront tests.
"""

import asyncio
import json
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import bindparam, text

from storefront import cart
from storefront.db import MONEY


class RecordingRedis:
    """In-process double for the few Redis commands the pipeline issues."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = defaultdict(list)
        self.published: list[tuple[str, dict]] = []

    async def rpush(self, key: str, *values: str) -> int:
        self.lists[key].extend(values)
        return len(self.lists[key])

    async def blpop(self, keys, timeout: float = 0):
        for key in keys:
            if self.lists[key]:
                return key, self.lists[key].pop(0)
        await asyncio.sleep(0)
        return None

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def events(self, channel: str) -> list[dict]:
        return [message for name, message in self.published if name == channel]


class OfflineQueueRedis(RecordingRedis):
    """Redis double whose list writes fail as if the server were unreachable."""

    async def rpush(self, key: str, *values: str) -> int:
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")


async def add_to_cart(session_factory, user_id: UUID, product_id: UUID, quantity: int) -> None:
    async with session_factory() as session:
        await cart.add_item(session, user_id, product_id, quantity)


async def create_user(session_factory, name: str = "Jane Doe") -> UUID:
    user_id = uuid4()
    async with session_factory() as session:
        await session.execute(
            text("INSERT INTO users (id, name, email) VALUES (:id, :name, :email)"),
            {"id": str(user_id), "name": name, "email": f"{user_id.hex[:8]}@example.com"},
        )
        await session.commit()
    return user_id


async def create_product(
    session_factory,
    name: str = "Widget",
    price: str = "10.00",
    stock: int = 10,
    sku: str | None = None,
) -> UUID:
    product_id = uuid4()
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        await session.execute(
            text("""
                INSERT INTO products
                    (id, name, sku, price, stock_quantity, is_active, created_at, updated_at)
                VALUES (:id, :name, :sku, :price, :stock, :active, :now, :now)
            """).bindparams(bindparam("price", type_=MONEY)),
            {
                "id": str(product_id),
                "name": name,
                "sku": sku or f"SKU-{product_id.hex[:8].upper()}",
                "price": Decimal(price),
                "stock": stock,
                "active": True,
                "now": now,
            },
        )
        await session.commit()
    return product_id


async def stock_of(session_factory, product_id: UUID) -> int:
    async with session_factory() as session:
        result = await session.execute(
            text("SELECT stock_quantity FROM products WHERE id = :id"),
            {"id": str(product_id)},
        )
        return result.scalar_one()


async def order_status(session_factory, order_id: UUID) -> str:
    async with session_factory() as session:
        result = await session.execute(
            text("SELECT status FROM orders WHERE id = :id"), {"id": str(order_id)}
        )
        return result.scalar_one()


async def set_order_status(session_factory, order_id: UUID, status: str) -> None:
    async with session_factory() as session:
        await session.execute(
            text("UPDATE orders SET status = :status WHERE id = :id"),
            {"id": str(order_id), "status": status},
        )
        await session.commit()


async def count_rows(session_factory, table: str, **where) -> int:
    clause = " AND ".join(f"{column} = :{column}" for column in where) or "1 = 1"
    async with session_factory() as session:
        result = await session.execute(
            text(f"SELECT COUNT(*) FROM {table} WHERE {clause}"),
            {column: str(value) for column, value in where.items()},
        )
        return result.scalar_one()


async def deactivate_product(session_factory, product_id: UUID) -> None:
    async with session_factory() as session:
        await session.execute(
            text("UPDATE products SET is_active = :active WHERE id = :id"),
            {"id": str(product_id), "active": False},
        )
        await session.commit()


async def set_stock(session_factory, product_id: UUID, stock: int) -> None:
    async with session_factory() as session:
        await session.execute(
            text("UPDATE products SET stock_quantity = :stock WHERE id = :id"),
            {"id": str(product_id), "stock": stock},
        )
        await session.commit()

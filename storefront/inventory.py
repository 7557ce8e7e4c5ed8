"""
Storefront / 在庫台帳 (Inventory Ledger)

商品ごとの在庫数を管理する。在庫を書き換えるのは注文処理ワーカーだけで、
減算は「条件付き UPDATE」1文で行う:

    UPDATE products SET stock_quantity = stock_quantity - :qty
    WHERE id = :id AND stock_quantity >= :qty

PostgreSQL ではこの UPDATE が行ロックを取るため、同じ商品への同時減算は
直列化される。後からロックを取った側は減った在庫を見て InsufficientStock になる。
読んでから書く (read-modify-write) 方式は使わない。

在庫がしきい値を上からまたいだかどうかは減算直後に明示的に判定し、
通知はコミット後に呼び出し元が notify_low_stock() で行う。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .config import LOW_STOCK_THRESHOLD
from .errors import InsufficientStock, ProductNotFound
from .events import LowStockCrossed

logger = logging.getLogger(__name__)

INVENTORY_CHANNEL = "inventory_events"


class StockChange(BaseModel):
    """在庫変更の結果"""
    product_id: UUID
    previous: int
    current: int
    crossed_low_stock: bool = False


def crossed_low_stock(previous: int, current: int, threshold: int) -> bool:
    """しきい値より上から、しきい値以下（ただし 0 より大きい）へ移ったか。"""
    return previous > threshold >= current > 0


def _lock_clause(session: AsyncSession) -> str:
    # SQLite は FOR UPDATE を持たない（書き込みはデータベース単位で直列化される）
    if session.get_bind().dialect.name == "postgresql":
        return " FOR UPDATE"
    return ""


async def _load_stock(session: AsyncSession, product_id: UUID, lock: bool = False):
    sql = "SELECT id, name, stock_quantity FROM products WHERE id = :id"
    if lock:
        sql += _lock_clause(session)
    result = await session.execute(text(sql), {"id": str(product_id)})
    row = result.fetchone()
    if not row:
        raise ProductNotFound(product_id)
    return row


async def check_availability(
    session: AsyncSession, product_id: UUID, quantity: int
) -> bool:
    """
    在庫が quantity 以上あるかを返す（読み取りのみ）。

    同時実行下では参考値にすぎない。確定判定は decrement() が行う。
    """
    row = await _load_stock(session, product_id)
    return row.stock_quantity >= quantity


async def decrement(
    session: AsyncSession,
    product_id: UUID,
    quantity: int,
    threshold: int = LOW_STOCK_THRESHOLD,
) -> StockChange:
    """
    在庫を quantity だけ減らす。

    呼び出し元のトランザクション内で実行する。在庫不足なら何も変更せずに
    InsufficientStock を送出するので、呼び出し元はトランザクション全体を
    ロールバックする。
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    result = await session.execute(
        text("""
            UPDATE products
            SET stock_quantity = stock_quantity - :qty, updated_at = :now
            WHERE id = :id AND stock_quantity >= :qty
            RETURNING stock_quantity
        """),
        {"id": str(product_id), "qty": quantity, "now": datetime.now(timezone.utc)},
    )
    row = result.fetchone()
    if row is None:
        current = await _load_stock(session, product_id)
        raise InsufficientStock(product_id, current.stock_quantity, current.name)

    current_stock = row.stock_quantity
    previous_stock = current_stock + quantity
    return StockChange(
        product_id=product_id,
        previous=previous_stock,
        current=current_stock,
        crossed_low_stock=crossed_low_stock(previous_stock, current_stock, threshold),
    )


async def increment(
    session: AsyncSession, product_id: UUID, quantity: int
) -> StockChange:
    """補償用の在庫戻し（手動入荷など）。注文処理の経路では使わない。"""
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    result = await session.execute(
        text("""
            UPDATE products
            SET stock_quantity = stock_quantity + :qty, updated_at = :now
            WHERE id = :id
            RETURNING stock_quantity
        """),
        {"id": str(product_id), "qty": quantity, "now": datetime.now(timezone.utc)},
    )
    row = result.fetchone()
    if row is None:
        raise ProductNotFound(product_id)
    return StockChange(
        product_id=product_id,
        previous=row.stock_quantity - quantity,
        current=row.stock_quantity,
    )


async def set_stock(
    session: AsyncSession,
    product_id: UUID,
    quantity: int,
    threshold: int = LOW_STOCK_THRESHOLD,
) -> StockChange:
    """在庫数を直接設定する（棚卸し）。負の値は 0 に丸める。"""
    quantity = max(0, quantity)
    row = await _load_stock(session, product_id, lock=True)
    await session.execute(
        text("UPDATE products SET stock_quantity = :qty, updated_at = :now WHERE id = :id"),
        {"id": str(product_id), "qty": quantity, "now": datetime.now(timezone.utc)},
    )
    return StockChange(
        product_id=product_id,
        previous=row.stock_quantity,
        current=quantity,
        crossed_low_stock=crossed_low_stock(row.stock_quantity, quantity, threshold),
    )


async def low_stock_products(
    session: AsyncSession, threshold: int = LOW_STOCK_THRESHOLD
) -> list[dict]:
    """在庫が 0 より多く、しきい値以下の商品を返す。"""
    result = await session.execute(
        text("""
            SELECT id, name, sku, stock_quantity
            FROM products
            WHERE stock_quantity > 0 AND stock_quantity <= :threshold
            ORDER BY stock_quantity ASC, name ASC
        """),
        {"threshold": threshold},
    )
    return [
        {
            "id": str(row.id),
            "name": row.name,
            "sku": row.sku,
            "stock_quantity": row.stock_quantity,
        }
        for row in result.fetchall()
    ]


async def notify_low_stock(
    redis: aioredis.Redis,
    change: StockChange,
    threshold: int = LOW_STOCK_THRESHOLD,
) -> None:
    """在庫しきい値通過を通知チャネルへ発行する（fire-and-forget）。"""
    if not change.crossed_low_stock:
        return
    event = LowStockCrossed(
        product_id=change.product_id,
        previous_stock=change.previous,
        current_stock=change.current,
        threshold=threshold,
        timestamp=datetime.now(timezone.utc),
    )
    await redis.publish(
        INVENTORY_CHANNEL,
        json.dumps({
            "event_type": "LowStockCrossed",
            "data": event.model_dump(mode="json"),
        }),
    )
    logger.info(
        "Low stock for product %s: %d -> %d", change.product_id, change.previous, change.current
    )

"""
Storefront / クエリハンドラ (読み取り側)

注文・注文明細・商品カタログの読み取りだけを行う。書き込みはしない。
"""

from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate
from .db import isoformat


async def get_order(session: AsyncSession, order_id: UUID) -> OrderAggregate | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return OrderAggregate.from_row(row)


async def get_order_status(session: AsyncSession, order_id: UUID) -> str | None:
    """ステータスストリーム用。status 列だけを読む。"""
    result = await session.execute(
        text("SELECT status FROM orders WHERE id = :id"),
        {"id": str(order_id)},
    )
    return result.scalar_one_or_none()


async def get_order_items(session: AsyncSession, order_id: UUID) -> list[dict]:
    """注文明細（処理時点のスナップショット）を返す。"""
    result = await session.execute(
        text("""
            SELECT * FROM order_items
            WHERE order_id = :order_id
            ORDER BY created_at ASC, id ASC
        """),
        {"order_id": str(order_id)},
    )
    return [
        {
            "id": str(row.id),
            "product_id": str(row.product_id),
            "product_name": row.product_name,
            "product_sku": row.product_sku,
            "price": float(row.price),
            "quantity": row.quantity,
            "subtotal": float(row.subtotal),
        }
        for row in result.fetchall()
    ]


async def list_orders(session: AsyncSession, user_id: UUID) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, order_number, status, total, created_at
            FROM orders
            WHERE user_id = :user_id
            ORDER BY created_at DESC
        """),
        {"user_id": str(user_id)},
    )
    return [
        {
            "id": str(row.id),
            "order_number": row.order_number,
            "status": row.status,
            "total": float(row.total),
            "created_at": isoformat(row.created_at),
        }
        for row in result.fetchall()
    ]


def _product(row) -> dict:
    return {
        "id": str(row.id),
        "name": row.name,
        "sku": row.sku,
        "price": float(row.price),
        "stock_quantity": row.stock_quantity,
        "is_active": bool(row.is_active),
    }


async def get_product(session: AsyncSession, product_id: UUID) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"),
        {"id": str(product_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return _product(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM products WHERE is_active = :active ORDER BY name"),
        {"active": True},
    )
    return [_product(row) for row in result.fetchall()]

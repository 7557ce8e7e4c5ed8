"""
Storefront / チェックアウト (Checkout Orchestrator)

リクエスト処理の中で同期的に動く部分。

  1. カートが空でないことを確認
  2. 各行の在庫を確認（不足ならここで InsufficientStock。注文は作らない）
  3. 小計・税・合計を計算（この時点の価格のスナップショット。在庫は触らない）
  4. processing ステータスの注文を作成し、配送・請求先をコピーして保存
  5. 注文処理タスクをキューに積み、ワーカーを待たずに返す

ここでの在庫確認は参考値で、確定判定はワーカーの減算が行う。
タスクを積めなかった注文は failed にしてから TaskDeliveryFailure を送出する。
同じユーザーが連続で送信した場合、注文は2件作られる（重複排除はしない）。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory, tasks
from .aggregate import OrderAggregate, OrderStatus, generate_order_number
from .cart import cart_totals, get_cart_lines
from .config import TAX_RATE
from .db import MONEY
from .errors import EmptyCart, InsufficientStock, TaskDeliveryFailure
from .events import FulfillmentTask

logger = logging.getLogger(__name__)


class CheckoutInfo(BaseModel):
    """配送先・請求先。請求先を省略すると配送先の値を使う。"""
    shipping_name: str = Field(min_length=1, max_length=255)
    shipping_email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    shipping_phone: str | None = Field(default=None, max_length=20)
    shipping_address: str = Field(min_length=1, max_length=500)
    shipping_city: str = Field(min_length=1, max_length=100)
    shipping_state: str | None = Field(default=None, max_length=100)
    shipping_postal_code: str = Field(min_length=1, max_length=20)
    shipping_country: str | None = Field(default=None, max_length=100)
    billing_name: str | None = Field(default=None, max_length=255)
    billing_email: str | None = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    billing_address: str | None = Field(default=None, max_length=500)
    billing_city: str | None = Field(default=None, max_length=100)
    billing_state: str | None = Field(default=None, max_length=100)
    billing_postal_code: str | None = Field(default=None, max_length=20)
    billing_country: str | None = Field(default=None, max_length=100)

    def snapshot(self) -> dict[str, str | None]:
        """注文に保存する住所のコピー"""
        shipping_country = self.shipping_country or "US"
        return {
            "shipping_name": self.shipping_name,
            "shipping_email": self.shipping_email,
            "shipping_phone": self.shipping_phone,
            "shipping_address": self.shipping_address,
            "shipping_city": self.shipping_city,
            "shipping_state": self.shipping_state,
            "shipping_postal_code": self.shipping_postal_code,
            "shipping_country": shipping_country,
            "billing_name": self.billing_name or self.shipping_name,
            "billing_email": self.billing_email or self.shipping_email,
            "billing_address": self.billing_address or self.shipping_address,
            "billing_city": self.billing_city or self.shipping_city,
            "billing_state": self.billing_state or self.shipping_state,
            "billing_postal_code": self.billing_postal_code or self.shipping_postal_code,
            "billing_country": self.billing_country or shipping_country,
        }


async def _check_stock(session: AsyncSession, lines) -> None:
    for line in lines:
        if not await inventory.check_availability(session, line.product_id, line.quantity):
            raise InsufficientStock(line.product_id, line.stock_quantity, line.product_name)


async def _fail_undelivered(session: AsyncSession, order_id: UUID, reason: str) -> None:
    await session.execute(
        text("""
            UPDATE orders SET status = :failed, error = :error, updated_at = :now
            WHERE id = :id AND status = :processing
        """),
        {
            "id": str(order_id),
            "failed": OrderStatus.FAILED.value,
            "processing": OrderStatus.PROCESSING.value,
            "error": reason,
            "now": datetime.now(timezone.utc),
        },
    )
    await session.commit()


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    user_id: UUID,
    info: CheckoutInfo,
    tax_rate: Decimal = TAX_RATE,
) -> OrderAggregate:
    """
    注文作成コマンド

    注文の作成だけをコミットし、タスクを積んだらすぐに返す。
    在庫の減算・明細作成はワーカーが行う。
    キューへの書き込みに失敗した場合は注文を failed にして TaskDeliveryFailure を送出する。
    """
    lines = await get_cart_lines(session, user_id)
    if not lines:
        raise EmptyCart()
    await _check_stock(session, lines)

    totals = cart_totals(lines, tax_rate)
    order_id = uuid4()
    now = datetime.now(timezone.utc)
    address = info.snapshot()

    columns = ", ".join(address)
    params = ", ".join(f":{name}" for name in address)
    statement = text(f"""
        INSERT INTO orders
            (id, user_id, order_number, status, subtotal, tax, total,
             {columns}, created_at, updated_at)
        VALUES
            (:id, :user_id, :order_number, :status, :subtotal, :tax, :total,
             {params}, :now, :now)
    """).bindparams(
        bindparam("subtotal", type_=MONEY),
        bindparam("tax", type_=MONEY),
        bindparam("total", type_=MONEY),
    )
    await session.execute(
        statement,
        {
            "id": str(order_id),
            "user_id": str(user_id),
            "order_number": generate_order_number(),
            "status": OrderStatus.PROCESSING.value,
            "subtotal": totals.subtotal,
            "tax": totals.tax,
            "total": totals.total,
            "now": now,
            **address,
        },
    )
    await session.commit()

    try:
        await tasks.enqueue(redis, FulfillmentTask(order_id=order_id, user_id=user_id))
    except RedisError as exc:
        failure = TaskDeliveryFailure(order_id, 1, f"{type(exc).__name__}: {exc}")
        logger.error("Could not enqueue order %s: %s", order_id, exc)
        await _fail_undelivered(session, order_id, str(failure))
        raise failure from exc

    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"), {"id": str(order_id)}
    )
    return OrderAggregate.from_row(result.fetchone())

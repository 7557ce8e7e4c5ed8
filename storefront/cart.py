"""
Storefront / カート (Cart Store)

ユーザーごとのカート行（商品 + 数量）を管理する。
(user_id, product_id) の組は一意で、注文処理が完了するとまとめて削除される。
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .config import TAX_RATE
from .errors import InsufficientStock, ProductNotFound

CENT = Decimal("0.01")


class CartLine(BaseModel):
    id: UUID
    product_id: UUID
    product_name: str
    product_sku: str
    price: Decimal
    stock_quantity: int
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return (self.price * self.quantity).quantize(CENT, rounding=ROUND_HALF_UP)


class Totals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def cart_totals(lines: list[CartLine], tax_rate: Decimal = TAX_RATE) -> Totals:
    """小計・税・合計を計算する（セント単位で四捨五入）。"""
    subtotal = sum((line.price * line.quantity for line in lines), Decimal("0"))
    subtotal = subtotal.quantize(CENT, rounding=ROUND_HALF_UP)
    tax = Decimal("0.00")
    if tax_rate > 0:
        tax = (subtotal * Decimal(str(tax_rate))).quantize(CENT, rounding=ROUND_HALF_UP)
    return Totals(subtotal=subtotal, tax=tax, total=subtotal + tax)


async def get_cart_lines(session: AsyncSession, user_id: UUID) -> list[CartLine]:
    """カート行を商品情報付きで追加順に返す。"""
    result = await session.execute(
        text("""
            SELECT ci.id, ci.product_id, ci.quantity,
                   p.name, p.sku, p.price, p.stock_quantity
            FROM cart_items ci
            JOIN products p ON p.id = ci.product_id
            WHERE ci.user_id = :user_id
            ORDER BY ci.created_at ASC, ci.id ASC
        """),
        {"user_id": str(user_id)},
    )
    return [
        CartLine(
            id=UUID(str(row.id)),
            product_id=UUID(str(row.product_id)),
            product_name=row.name,
            product_sku=row.sku,
            price=Decimal(str(row.price)),
            stock_quantity=row.stock_quantity,
            quantity=row.quantity,
        )
        for row in result.fetchall()
    ]


async def _load_product(session: AsyncSession, product_id: UUID):
    result = await session.execute(
        text("SELECT id, name, stock_quantity FROM products WHERE id = :id AND is_active = :active"),
        {"id": str(product_id), "active": True},
    )
    row = result.fetchone()
    if not row:
        raise ProductNotFound(product_id)
    return row


async def _load_line(session: AsyncSession, user_id: UUID, product_id: UUID):
    result = await session.execute(
        text("""
            SELECT id, quantity FROM cart_items
            WHERE user_id = :user_id AND product_id = :product_id
        """),
        {"user_id": str(user_id), "product_id": str(product_id)},
    )
    return result.fetchone()


async def add_item(
    session: AsyncSession, user_id: UUID, product_id: UUID, quantity: int
) -> int:
    """
    商品をカートに追加し、追加後の数量を返す。

    既にカートにある商品は数量を合算する。合算後に在庫を超える場合は
    在庫数に切り詰める。新規追加で在庫を超える場合はエラーにする。
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    product = await _load_product(session, product_id)
    if product.stock_quantity == 0:
        raise InsufficientStock(product_id, 0, product.name)

    line = await _load_line(session, user_id, product_id)
    new_quantity = line.quantity + quantity if line else quantity
    if new_quantity > product.stock_quantity:
        if not line:
            raise InsufficientStock(product_id, product.stock_quantity, product.name)
        new_quantity = product.stock_quantity

    now = datetime.now(timezone.utc)
    if line:
        await session.execute(
            text("UPDATE cart_items SET quantity = :qty, updated_at = :now WHERE id = :id"),
            {"qty": new_quantity, "now": now, "id": str(line.id)},
        )
    else:
        await session.execute(
            text("""
                INSERT INTO cart_items (id, user_id, product_id, quantity, created_at, updated_at)
                VALUES (:id, :user_id, :product_id, :qty, :now, :now)
            """),
            {
                "id": str(uuid4()),
                "user_id": str(user_id),
                "product_id": str(product_id),
                "qty": new_quantity,
                "now": now,
            },
        )
    await session.commit()
    return new_quantity


async def update_item(
    session: AsyncSession, user_id: UUID, product_id: UUID, quantity: int
) -> int | None:
    """
    カート行の数量を変更する。0 以下なら行を削除する。

    行が無ければ None を返す。
    """
    line = await _load_line(session, user_id, product_id)
    if not line:
        return None

    if quantity <= 0:
        await remove_item(session, user_id, product_id)
        return 0

    product = await _load_product(session, product_id)
    if quantity > product.stock_quantity:
        raise InsufficientStock(product_id, product.stock_quantity, product.name)

    await session.execute(
        text("UPDATE cart_items SET quantity = :qty, updated_at = :now WHERE id = :id"),
        {"qty": quantity, "now": datetime.now(timezone.utc), "id": str(line.id)},
    )
    await session.commit()
    return quantity


async def remove_item(session: AsyncSession, user_id: UUID, product_id: UUID) -> bool:
    result = await session.execute(
        text("DELETE FROM cart_items WHERE user_id = :user_id AND product_id = :product_id"),
        {"user_id": str(user_id), "product_id": str(product_id)},
    )
    await session.commit()
    return result.rowcount > 0


async def clear(session: AsyncSession, user_id: UUID) -> int:
    """カートを空にする。コミットは呼び出し元のトランザクションに任せる。"""
    result = await session.execute(
        text("DELETE FROM cart_items WHERE user_id = :user_id"),
        {"user_id": str(user_id)},
    )
    return result.rowcount


async def cart_count(session: AsyncSession, user_id: UUID) -> int:
    result = await session.execute(
        text("SELECT COALESCE(SUM(quantity), 0) AS total FROM cart_items WHERE user_id = :user_id"),
        {"user_id": str(user_id)},
    )
    return int(result.scalar_one())

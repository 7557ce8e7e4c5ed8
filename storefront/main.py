"""
Storefront / FastAPI エントリーポイント

チェックアウトは同期的に注文を作成してタスクを積むだけで、すぐに返す。
注文の完了はワーカーが非同期に行い、ブラウザは SSE のステータスストリームで
結果を知る。

  POST /checkout                           → 202 (order_id, order_number)
  GET  /checkout/orders/{id}/status        → text/event-stream
  GET  /checkout/orders/{id}/confirmation  → 注文 + 明細（終端のときだけ）

認証は外部に任せ、X-User-Id ヘッダのユーザー ID をそのまま信頼する。
"""

from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from . import cart, checkout, queries, status
from .aggregate import OrderAggregate, OrderStatus
from .config import (
    DATABASE_URL,
    REDIS_URL,
    STATUS_MAX_POLLS,
    STATUS_POLL_INTERVAL,
    TAX_RATE,
)
from .db import create_engine, create_session_factory, init_db
from .errors import EmptyCart, InsufficientStock, ProductNotFound, TaskDeliveryFailure


engine = create_engine(DATABASE_URL)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await init_db(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront", lifespan=lifespan)


async def current_user(x_user_id: UUID = Header()) -> UUID:
    """認証済みユーザー ID（認証そのものは外部の責務）"""
    return x_user_id


# ── Request Models ───────────────────────────────


class AddToCartRequest(BaseModel):
    product_id: UUID
    quantity: int = Field(ge=1)


class UpdateCartRequest(BaseModel):
    quantity: int = Field(ge=0)


# ── カタログ (読み取りのみ) ──────────────────────


@app.get("/products")
async def list_products():
    async with async_session() as session:
        return await queries.list_products(session)


@app.get("/products/{product_id}")
async def get_product(product_id: UUID):
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
        if not product:
            raise HTTPException(404, "Product not found")
        return product


# ── カート ───────────────────────────────────────


@app.get("/cart")
async def get_cart(user_id: UUID = Depends(current_user)):
    async with async_session() as session:
        lines = await cart.get_cart_lines(session, user_id)
        totals = cart.cart_totals(lines, TAX_RATE)
        return {
            "items": [
                {
                    "id": str(line.id),
                    "product_id": str(line.product_id),
                    "product_name": line.product_name,
                    "price": float(line.price),
                    "stock_quantity": line.stock_quantity,
                    "quantity": line.quantity,
                    "subtotal": float(line.subtotal),
                }
                for line in lines
            ],
            "subtotal": float(totals.subtotal),
            "tax": float(totals.tax),
            "total": float(totals.total),
            "count": await cart.cart_count(session, user_id),
        }


@app.post("/cart/items")
async def add_to_cart(req: AddToCartRequest, user_id: UUID = Depends(current_user)):
    async with async_session() as session:
        try:
            quantity = await cart.add_item(session, user_id, req.product_id, req.quantity)
        except ProductNotFound as exc:
            raise HTTPException(404, str(exc))
        except InsufficientStock as exc:
            raise HTTPException(422, str(exc))
        return {"product_id": str(req.product_id), "quantity": quantity}


@app.patch("/cart/items/{product_id}")
async def update_cart_item(
    product_id: UUID, req: UpdateCartRequest, user_id: UUID = Depends(current_user)
):
    async with async_session() as session:
        try:
            quantity = await cart.update_item(session, user_id, product_id, req.quantity)
        except ProductNotFound as exc:
            raise HTTPException(404, str(exc))
        except InsufficientStock as exc:
            raise HTTPException(422, str(exc))
        if quantity is None:
            raise HTTPException(404, "Cart item not found")
        return {"product_id": str(product_id), "quantity": quantity}


@app.delete("/cart/items/{product_id}")
async def remove_cart_item(product_id: UUID, user_id: UUID = Depends(current_user)):
    async with async_session() as session:
        if not await cart.remove_item(session, user_id, product_id):
            raise HTTPException(404, "Cart item not found")
        return {"product_id": str(product_id), "removed": True}


# ── チェックアウト ───────────────────────────────


@app.post("/checkout", status_code=202)
async def place_order(info: checkout.CheckoutInfo, user_id: UUID = Depends(current_user)):
    """注文を作成してタスクを積む。注文処理の完了は待たない。"""
    async with async_session() as session:
        try:
            order = await checkout.create_order(session, redis_pool, user_id, info, TAX_RATE)
        except (EmptyCart, InsufficientStock) as exc:
            raise HTTPException(422, str(exc))
        except TaskDeliveryFailure as exc:
            raise HTTPException(503, str(exc))
        return {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "status": order.status.value,
            "status_url": f"/checkout/orders/{order.id}/status",
        }


async def _owned_order(order_id: UUID, user_id: UUID) -> OrderAggregate:
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    if order.user_id != user_id:
        raise HTTPException(403, "Forbidden")
    return order


@app.get("/checkout/orders/{order_id}/processing")
async def processing(order_id: UUID, user_id: UUID = Depends(current_user)):
    order = await _owned_order(order_id, user_id)
    return {"id": str(order.id), "order_number": order.order_number}


@app.get("/checkout/orders/{order_id}/status")
async def order_status(
    order_id: UUID, request: Request, user_id: UUID = Depends(current_user)
):
    """注文ステータスの SSE ストリーム"""
    await _owned_order(order_id, user_id)
    return status.stream_order_status(
        async_session,
        order_id,
        request.is_disconnected,
        interval=STATUS_POLL_INTERVAL,
        max_polls=STATUS_MAX_POLLS,
    )


@app.get("/checkout/orders/{order_id}/confirmation")
async def confirmation(order_id: UUID, user_id: UUID = Depends(current_user)):
    """
    注文確認。処理中なら処理中ページへリダイレクトする。
    """
    order = await _owned_order(order_id, user_id)
    if order.status is OrderStatus.PROCESSING:
        return RedirectResponse(f"/checkout/orders/{order_id}/processing", status_code=303)
    if order.status is OrderStatus.FAILED:
        raise HTTPException(409, "Order processing failed. Please try again.")

    async with async_session() as session:
        items = await queries.get_order_items(session, order_id)
    if not items:
        raise HTTPException(409, "Order not found or incomplete.")
    return {**order.to_dict(), "order_items": items}


@app.get("/orders")
async def list_orders(user_id: UUID = Depends(current_user)):
    async with async_session() as session:
        return await queries.list_orders(session, user_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}

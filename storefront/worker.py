"""
Storefront / 注文処理ワーカー (Fulfillment Worker)

HTTP リクエストの外で、キューから取り出した注文処理タスクを1件ずつ実行する。

  ┌───────────┐  RPUSH   ┌───────┐  BLPOP   ┌────────┐
  │ Checkout  │ ───────▶ │ Redis │ ───────▶ │ Worker │ ──▶ orders / order_items / products
  └───────────┘          └───────┘          └────────┘

1回の試行は1トランザクション:
  1. 注文を「processing のときだけ」更新してロックを取る（二重配送はここで no-op になる）
  2. カートを読み直す（チェックアウト後に変わっている可能性がある）
  3. 空なら failed
  4. 追加順に、在庫を確認 → 明細スナップショット作成 → 在庫をロック付きで減算
     1行でも在庫不足なら全体をロールバックし failed
  5. カートを削除し completed にしてコミット

想定外の例外やタイムアウトは最大 max_tries 回まで再試行し、
それでも失敗したらデッドレターに記録し、注文を強制的に failed にする。
processing のまま放置される注文は残さない。
"""

import asyncio
import json
import logging
import signal
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import cart, inventory, queries, tasks
from .aggregate import OrderStatus
from .config import (
    DATABASE_URL,
    FULFILLMENT_MAX_TRIES,
    FULFILLMENT_TIMEOUT,
    LOG_LEVEL,
    LOW_STOCK_THRESHOLD,
    REDIS_URL,
    WORKER_CONCURRENCY,
)
from .db import MONEY, create_engine, create_session_factory, init_db
from .errors import (
    EmptyCart,
    InsufficientStock,
    OrderNotFound,
    TaskDeliveryFailure,
    TaskTimeout,
)
from .events import FulfillmentTask, OrderCompleted, OrderFailed
from .inventory import StockChange

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"


class Outcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FulfillmentResult(BaseModel):
    order_id: UUID
    outcome: Outcome
    order_number: str | None = None
    reason: str | None = None
    stock_changes: list[StockChange] = []


# ── トランザクション内の操作 ─────────────────────


async def _claim(session: AsyncSession, order_id: UUID) -> bool:
    """processing の注文だけを行ロックする。更新できなければ既に処理済み。"""
    result = await session.execute(
        text("""
            UPDATE orders SET updated_at = :now
            WHERE id = :id AND status = :processing
        """),
        {
            "id": str(order_id),
            "now": datetime.now(timezone.utc),
            "processing": OrderStatus.PROCESSING.value,
        },
    )
    return result.rowcount == 1


async def _save_status(
    session: AsyncSession,
    order_id: UUID,
    status: OrderStatus,
    error: str | None = None,
) -> bool:
    result = await session.execute(
        text("""
            UPDATE orders SET status = :status, error = :error, updated_at = :now
            WHERE id = :id AND status = :processing
        """),
        {
            "id": str(order_id),
            "status": status.value,
            "error": error,
            "now": datetime.now(timezone.utc),
            "processing": OrderStatus.PROCESSING.value,
        },
    )
    return result.rowcount == 1


async def _insert_order_item(
    session: AsyncSession, order_id: UUID, line: cart.CartLine
) -> None:
    """処理時点の商品名・SKU・単価をコピーした明細を作る。以後更新しない。"""
    await session.execute(
        text("""
            INSERT INTO order_items
                (id, order_id, product_id, product_name, product_sku,
                 price, quantity, subtotal, created_at)
            VALUES
                (:id, :order_id, :product_id, :product_name, :product_sku,
                 :price, :quantity, :subtotal, :now)
        """).bindparams(
            bindparam("price", type_=MONEY), bindparam("subtotal", type_=MONEY)
        ),
        {
            "id": str(uuid4()),
            "order_id": str(order_id),
            "product_id": str(line.product_id),
            "product_name": line.product_name,
            "product_sku": line.product_sku,
            "price": line.price,
            "quantity": line.quantity,
            "subtotal": line.subtotal,
            "now": datetime.now(timezone.utc),
        },
    )


async def force_fail(session_factory: sessionmaker, order_id: UUID, reason: str) -> bool:
    """
    注文を processing から failed に強制遷移する。

    どの試行もコミットできなかった場合でも使える。既に終端なら何もしない。
    """
    async with session_factory() as session:
        async with session.begin():
            return await _save_status(session, order_id, OrderStatus.FAILED, reason)


# ── 1回の試行 ───────────────────────────────────


async def fulfill_order(
    session_factory: sessionmaker,
    task: FulfillmentTask,
    threshold: int = LOW_STOCK_THRESHOLD,
) -> FulfillmentResult:
    """
    注文処理を1回試行する。

    EmptyCart / InsufficientStock は業務上の失敗なので、ロールバック後に
    注文を failed にして結果を返す（再試行しない）。
    それ以外の例外は呼び出し元 (handle_task) に伝播する。
    """
    order_id = task.order_id
    try:
        async with session_factory() as session:
            async with session.begin():
                if not await _claim(session, order_id):
                    order = await queries.get_order(session, order_id)
                    if order is None:
                        raise OrderNotFound(order_id)
                    logger.warning(
                        "Order %s is not in processing status (%s), discarding task",
                        order_id, order.status.value,
                    )
                    return FulfillmentResult(order_id=order_id, outcome=Outcome.SKIPPED)

                order = await queries.get_order(session, order_id)
                lines = await cart.get_cart_lines(session, task.user_id)
                if not lines:
                    raise EmptyCart()

                changes: list[StockChange] = []
                for line in lines:
                    if line.quantity > line.stock_quantity:
                        raise InsufficientStock(
                            line.product_id, line.stock_quantity, line.product_name
                        )
                    await _insert_order_item(session, order_id, line)
                    changes.append(
                        await inventory.decrement(
                            session, line.product_id, line.quantity, threshold
                        )
                    )

                await cart.clear(session, task.user_id)
                order.transition(OrderStatus.COMPLETED)
                await _save_status(session, order_id, order.status)
    except (EmptyCart, InsufficientStock) as exc:
        # 部分的な書き込みはロールバック済みでロックも外れている。
        # その間に別の配送が終端にしていれば failed にはしない
        if not await force_fail(session_factory, order_id, str(exc)):
            logger.warning(
                "Order %s reached a terminal status before it could be failed (%s)",
                order_id, exc,
            )
            return FulfillmentResult(order_id=order_id, outcome=Outcome.SKIPPED, reason=str(exc))
        logger.warning("Order %s failed: %s", order_id, exc)
        return FulfillmentResult(order_id=order_id, outcome=Outcome.FAILED, reason=str(exc))

    logger.info("Order %s (%s) completed", order_id, order.order_number)
    return FulfillmentResult(
        order_id=order_id,
        outcome=Outcome.COMPLETED,
        order_number=order.order_number,
        stock_changes=changes,
    )


# ── リトライとタイムアウト ──────────────────────


async def _publish_outcome(
    redis: aioredis.Redis,
    result: FulfillmentResult,
    threshold: int,
) -> None:
    """コミット後の通知。通知の失敗で注文の結果は変わらない。"""
    now = datetime.now(timezone.utc)
    try:
        for change in result.stock_changes:
            await inventory.notify_low_stock(redis, change, threshold)

        if result.outcome is Outcome.COMPLETED:
            event_type = "OrderCompleted"
            event = OrderCompleted(
                order_id=result.order_id, order_number=result.order_number, timestamp=now
            )
        elif result.outcome is Outcome.FAILED:
            event_type = "OrderFailed"
            event = OrderFailed(order_id=result.order_id, reason=result.reason, timestamp=now)
        else:
            return
        await redis.publish(
            ORDER_CHANNEL,
            json.dumps({"event_type": event_type, "data": event.model_dump(mode="json")}),
        )
    except RedisError:
        logger.exception("Failed to publish outcome of order %s", result.order_id)


async def handle_task(
    session_factory: sessionmaker,
    redis: aioredis.Redis,
    task: FulfillmentTask,
    max_tries: int = FULFILLMENT_MAX_TRIES,
    timeout: float = FULFILLMENT_TIMEOUT,
    threshold: int = LOW_STOCK_THRESHOLD,
) -> FulfillmentResult:
    """
    タスクを最大 max_tries 回試行する。各試行は timeout 秒で打ち切る。

    上限に達したら注文を failed にし、デッドレターに記録してエラーログを出す。
    """
    last_error = ""
    for attempt in range(1, max_tries + 1):
        try:
            result = await asyncio.wait_for(
                fulfill_order(session_factory, task, threshold), timeout
            )
        except OrderNotFound as exc:
            logger.warning("Discarding task: %s", exc)
            return FulfillmentResult(
                order_id=task.order_id, outcome=Outcome.SKIPPED, reason=str(exc)
            )
        except asyncio.TimeoutError:
            last_error = str(TaskTimeout(task.order_id, timeout))
            logger.error("Attempt %d/%d: %s", attempt, max_tries, last_error)
        except Exception as exc:
            last_error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "Attempt %d/%d for order %s failed", attempt, max_tries, task.order_id
            )
        else:
            await _publish_outcome(redis, result, threshold)
            return result

    failure = TaskDeliveryFailure(task.order_id, max_tries, last_error)
    logger.error("%s", failure)
    # データベース障害で force_fail できなくても失敗記録は残す
    try:
        await tasks.record_failure(redis, task, max_tries, last_error)
    except RedisError:
        logger.exception("Failed to record dead letter for order %s", task.order_id)
    try:
        await force_fail(session_factory, task.order_id, str(failure))
    except Exception:
        logger.exception("Failed to mark order %s as failed", task.order_id)

    result = FulfillmentResult(
        order_id=task.order_id, outcome=Outcome.FAILED, reason=str(failure)
    )
    await _publish_outcome(redis, result, threshold)
    return result


# ── キュー購読ループ ─────────────────────────────


async def _consume(
    session_factory: sessionmaker,
    redis: aioredis.Redis,
    shutdown_event: asyncio.Event,
    **options,
) -> None:
    while not shutdown_event.is_set():
        try:
            task = await tasks.dequeue(redis, timeout=1.0)
        except RedisError:
            logger.exception("Failed to read fulfillment queue")
            await asyncio.sleep(1.0)
            continue
        if task is None:
            continue
        try:
            await handle_task(session_factory, redis, task, **options)
        except Exception:
            logger.exception("Unhandled error while processing order %s", task.order_id)


async def run_worker(
    session_factory: sessionmaker,
    redis: aioredis.Redis,
    shutdown_event: asyncio.Event,
    concurrency: int = WORKER_CONCURRENCY,
    **options,
) -> None:
    """
    shutdown_event がセットされるまでキューを購読する。

    複数の注文を並行して処理できるが、1件のタスクは1つのコルーチンだけが扱う。
    """
    logger.info("Fulfillment worker started (concurrency=%d)", concurrency)
    await asyncio.gather(
        *(
            _consume(session_factory, redis, shutdown_event, **options)
            for _ in range(concurrency)
        )
    )
    logger.info("Fulfillment worker stopped")


async def _serve() -> None:
    engine = create_engine(DATABASE_URL)
    await init_db(engine)
    session_factory = create_session_factory(engine)
    redis = aioredis.from_url(REDIS_URL, decode_responses=True)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await run_worker(session_factory, redis, shutdown_event)
    finally:
        await redis.aclose()
        await engine.dispose()


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    asyncio.run(_serve())


if __name__ == "__main__":
    main()

"""
Storefront / 注文処理タスクキュー

Redis のリストをキューとして使う。

  enqueue  → RPUSH
  dequeue  → BLPOP（取り出しはアトミックなので、1件は1ワーカーにしか渡らない）

Pub/Sub と違い、ワーカーが停止している間のタスクも失われない。
リトライ上限に達したタスクはデッドレターリストに記録を残す。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis

from .config import FULFILLMENT_DEAD_LETTER, FULFILLMENT_QUEUE
from .events import FulfillmentTask

logger = logging.getLogger(__name__)


async def enqueue(
    redis: aioredis.Redis,
    task: FulfillmentTask,
    queue: str = FULFILLMENT_QUEUE,
) -> None:
    await redis.rpush(queue, task.model_dump_json())
    logger.info("Enqueued fulfillment task for order %s", task.order_id)


async def dequeue(
    redis: aioredis.Redis,
    timeout: float = 1.0,
    queue: str = FULFILLMENT_QUEUE,
) -> FulfillmentTask | None:
    """タスクを1件取り出す。timeout 秒待っても無ければ None を返す。"""
    item = await redis.blpop([queue], timeout=timeout)
    if not item:
        return None
    _key, payload = item
    return FulfillmentTask.model_validate_json(payload)


async def record_failure(
    redis: aioredis.Redis,
    task: FulfillmentTask,
    attempts: int,
    error: str,
    dead_letter: str = FULFILLMENT_DEAD_LETTER,
) -> None:
    """配送できなかったタスクの永続的な失敗記録"""
    await redis.rpush(
        dead_letter,
        json.dumps({
            "task": task.model_dump(mode="json"),
            "attempts": attempts,
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }),
    )

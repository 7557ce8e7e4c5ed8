"""
Storefront / 注文ステータス配信 (Status Publisher)

Server-Sent Events で注文ステータスをブラウザへ送る。
ワーカーから直接通知を受けるのではなく、一定間隔で orders を読み直す
ポーリング方式。最大でポーリング間隔1回分だけ反映が遅れる。

  processing ... processing → completed | failed   （終端イベントを送って終了）
  processing ... processing → timeout              （待ち時間の上限。失敗ではない）

timeout はワーカーを止めない。注文は後から完了する可能性があるので、
クライアントは失敗と決めつけずに再問い合わせする。
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from uuid import UUID

from fastapi.responses import StreamingResponse
from sqlalchemy.orm import sessionmaker

from . import queries
from .aggregate import STREAM_TIMEOUT, TERMINAL_STATUSES, OrderStatus
from .config import STATUS_MAX_POLLS, STATUS_POLL_INTERVAL
from .events import StatusEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


async def order_status_events(
    session_factory: sessionmaker,
    order_id: UUID,
    interval: float = STATUS_POLL_INTERVAL,
    max_polls: int = STATUS_MAX_POLLS,
) -> AsyncIterator[StatusEvent]:
    """
    ステータスを interval 秒ごとに読み直してイベントを返す。

    終端ステータスを返したら終了し、その後は何も返さない。
    max_polls 回読んでも終端にならなければ timeout を返して終了する。
    """
    reason = "timeout"
    try:
        for _ in range(max_polls):
            async with session_factory() as session:
                status = await queries.get_order_status(session, order_id)
            if status is None:
                reason = "missing"
                return
            yield StatusEvent(status=status, order_id=order_id)
            if OrderStatus(status) in TERMINAL_STATUSES:
                reason = status
                return
            await asyncio.sleep(interval)
        yield StatusEvent(status=STREAM_TIMEOUT, order_id=order_id)
    finally:
        logger.info("Status stream for order %s closed (%s)", order_id, reason)


def format_sse(event: StatusEvent) -> str:
    payload = {"status": event.status, "order_id": str(event.order_id)}
    return f"data: {json.dumps(payload)}\n\n"


async def _sse_body(
    events: AsyncIterator[StatusEvent],
    is_disconnected: Callable[[], Awaitable[bool]] | None,
) -> AsyncIterator[str]:
    try:
        async for event in events:
            yield format_sse(event)
            if is_disconnected is not None and await is_disconnected():
                logger.info("Client disconnected from order %s stream", event.order_id)
                return
    finally:
        await events.aclose()


def stream_order_status(
    session_factory: sessionmaker,
    order_id: UUID,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    interval: float = STATUS_POLL_INTERVAL,
    max_polls: int = STATUS_MAX_POLLS,
) -> StreamingResponse:
    """ステータスイベントを text/event-stream のレスポンスとして返す。"""
    events = order_status_events(session_factory, order_id, interval, max_polls)
    return StreamingResponse(
        _sse_body(events, is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )

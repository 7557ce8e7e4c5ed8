"""
Storefront / メッセージ定義

キューに積むタスクと、Redis Pub/Sub に流す通知イベントを定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class FulfillmentTask(BaseModel):
    """注文処理タスク（キューから高々1回だけ取り出される）"""
    order_id: UUID
    user_id: UUID


class LowStockCrossed(BaseModel):
    """在庫がしきい値を上から下へまたいだ"""
    product_id: UUID
    previous_stock: int
    current_stock: int
    threshold: int
    timestamp: datetime


class OrderCompleted(BaseModel):
    order_id: UUID
    order_number: str
    timestamp: datetime


class OrderFailed(BaseModel):
    """注文処理が失敗した（在庫不足・空カート・リトライ上限）"""
    order_id: UUID
    reason: str
    timestamp: datetime


class StatusEvent(BaseModel):
    """ステータスストリームで送る1イベント"""
    status: str
    order_id: UUID

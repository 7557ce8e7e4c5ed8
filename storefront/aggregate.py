"""
Storefront / 注文集約 (Order Aggregate)

注文ヘッダ（ステータス、金額スナップショット、配送・請求先スナップショット）を表す。

状態遷移:
    processing → completed  (在庫の引き当てと明細作成に成功)
    processing → failed     (空カート・在庫不足・リトライ上限)

completed / failed は終端。以後の遷移は許可しない。
"""

import secrets
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID

from .db import isoformat
from .errors import InvalidTransition


class OrderStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED})

# ステータスストリーム専用。注文の状態ではない。
STREAM_TIMEOUT = "timeout"

ADDRESS_FIELDS = (
    "shipping_name",
    "shipping_email",
    "shipping_phone",
    "shipping_address",
    "shipping_city",
    "shipping_state",
    "shipping_postal_code",
    "shipping_country",
    "billing_name",
    "billing_email",
    "billing_address",
    "billing_city",
    "billing_state",
    "billing_postal_code",
    "billing_country",
)


def generate_order_number() -> str:
    """人が読む注文番号。一意性は orders.order_number の UNIQUE 制約で保証する。"""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"ORD-{today}-{secrets.token_hex(4).upper()}"


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


class OrderAggregate:
    """注文集約。orders の1行から現在の状態を復元する。"""

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.user_id: UUID | None = None
        self.order_number: str = ""
        self.status: OrderStatus = OrderStatus.PROCESSING
        self.subtotal: Decimal = Decimal("0.00")
        self.tax: Decimal = Decimal("0.00")
        self.total: Decimal = Decimal("0.00")
        self.address: dict[str, str | None] = {}
        self.error: str | None = None
        self.created_at: str | None = None

    @classmethod
    def from_row(cls, row) -> "OrderAggregate":
        agg = cls()
        agg.id = UUID(str(row.id))
        agg.user_id = UUID(str(row.user_id))
        agg.order_number = row.order_number
        agg.status = OrderStatus(row.status)
        agg.subtotal = _money(row.subtotal)
        agg.tax = _money(row.tax)
        agg.total = _money(row.total)
        agg.address = {field: getattr(row, field) for field in ADDRESS_FIELDS}
        agg.error = row.error
        agg.created_at = isoformat(row.created_at)
        return agg

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: OrderStatus) -> None:
        """processing から終端ステータスへの遷移だけを許可する。"""
        if self.status is not OrderStatus.PROCESSING or target not in TERMINAL_STATUSES:
            raise InvalidTransition(self.id, self.status.value, OrderStatus(target).value)
        self.status = OrderStatus(target)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "order_number": self.order_number,
            "status": self.status.value,
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "total": float(self.total),
            **self.address,
            "error": self.error,
            "created_at": self.created_at,
        }

"""
Storefront / エラー定義

チェックアウト中に発生したエラーは呼び出し元へ同期的に返す。
ワーカー内で発生したエラーは注文の failed ステータスとログに記録する。
"""

from uuid import UUID


class StorefrontError(Exception):
    """注文パイプラインの基底例外"""


class EmptyCart(StorefrontError):
    def __init__(self) -> None:
        super().__init__("Cart is empty")


class InsufficientStock(StorefrontError):
    """在庫不足"""

    def __init__(
        self,
        product_id: UUID | str,
        available: int,
        product_name: str | None = None,
    ) -> None:
        self.product_id = str(product_id)
        self.available = available
        self.product_name = product_name
        label = product_name or self.product_id
        super().__init__(f"Insufficient stock for {label}. Available: {available}")


class ProductNotFound(StorefrontError):
    def __init__(self, product_id: UUID | str) -> None:
        self.product_id = str(product_id)
        super().__init__(f"Product not found: {product_id}")


class OrderNotFound(StorefrontError):
    def __init__(self, order_id: UUID | str) -> None:
        self.order_id = str(order_id)
        super().__init__(f"Order not found: {order_id}")


class InvalidTransition(StorefrontError):
    """終端ステータスからの遷移など、許可されない状態遷移"""

    def __init__(self, order_id: UUID | str, current: str, target: str) -> None:
        self.order_id = str(order_id)
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")


class TaskTimeout(StorefrontError):
    def __init__(self, order_id: UUID | str, timeout: float) -> None:
        self.order_id = str(order_id)
        self.timeout = timeout
        super().__init__(f"Fulfillment of order {order_id} timed out after {timeout}s")


class TaskDeliveryFailure(StorefrontError):
    """リトライ上限に達したタスク"""

    def __init__(self, order_id: UUID | str, attempts: int, last_error: str) -> None:
        self.order_id = str(order_id)
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Fulfillment of order {order_id} abandoned after {attempts} attempts: {last_error}"
        )

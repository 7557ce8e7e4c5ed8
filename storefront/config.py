"""
Storefront / 設定

すべての設定値は環境変数から読み込む。
"""

import os
from decimal import Decimal

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./storefront.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

# 0 も許可する（税なし）
TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0"))
LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "5"))

FULFILLMENT_QUEUE = os.environ.get("FULFILLMENT_QUEUE", "fulfillment_tasks")
FULFILLMENT_DEAD_LETTER = os.environ.get(
    "FULFILLMENT_DEAD_LETTER", f"{FULFILLMENT_QUEUE}:failed"
)
FULFILLMENT_MAX_TRIES = int(os.environ.get("FULFILLMENT_MAX_TRIES", "3"))
FULFILLMENT_TIMEOUT = float(os.environ.get("FULFILLMENT_TIMEOUT", "60"))
WORKER_CONCURRENCY = int(os.environ.get("WORKER_CONCURRENCY", "1"))

STATUS_POLL_INTERVAL = float(os.environ.get("STATUS_POLL_INTERVAL", "1"))
STATUS_MAX_POLLS = int(os.environ.get("STATUS_MAX_POLLS", "60"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

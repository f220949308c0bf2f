"""
Stock Service — 設定

すべて環境変数から読み込む。各コンポーネントはコンストラクタで
値を受け取るので、ここの定数を参照するのは main.py だけ。
"""

import os

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
REDIS_NAMESPACE = os.environ.get("REDIS_NAMESPACE", "")
REDIS_SOCKET_TIMEOUT = float(os.environ.get("REDIS_SOCKET_TIMEOUT", "2"))

EVENTS_CHANNEL = os.environ.get("EVENTS_CHANNEL", "inventory_events")

# ── 在庫引き当て ─────────────────────────────────
RESERVATION_TTL_SECONDS = int(os.environ.get("RESERVATION_TTL_SECONDS", "900"))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "5"))
SWEEP_BATCH_SIZE = int(os.environ.get("SWEEP_BATCH_SIZE", "100"))
SWEEP_LOCK_TTL_SECONDS = int(os.environ.get("SWEEP_LOCK_TTL_SECONDS", "30"))
SWEEP_SHUTDOWN_TIMEOUT_SECONDS = float(os.environ.get("SWEEP_SHUTDOWN_TIMEOUT_SECONDS", "10"))

# ── レート制限 ───────────────────────────────────
RATE_LIMIT_REQUESTS = int(os.environ.get("RATE_LIMIT_REQUESTS", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))

# ── キャッシュ TTL (秒) ──────────────────────────
CACHE_TTL_PRODUCT = int(os.environ.get("CACHE_TTL_PRODUCT", "1800"))  # 30 分
CACHE_TTL_CATEGORY = int(os.environ.get("CACHE_TTL_CATEGORY", "3600"))  # 1 時間
CACHE_TTL_SESSION = int(os.environ.get("CACHE_TTL_SESSION", "86400"))  # 24 時間
CACHE_TTL_DEFAULT = int(os.environ.get("CACHE_TTL_DEFAULT", "3600"))
CACHE_TTL_ANALYTICS = int(os.environ.get("CACHE_TTL_ANALYTICS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

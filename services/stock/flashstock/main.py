"""
Stock Service — FastAPI エントリーポイント

フラッシュセールの在庫引き当てサービス。CQRS に倣い、
Command (POST / PUT) と Query (GET) のエンドポイントを分離する。

起動時に Redis 接続を作り、期限切れ引き当ての回収(sweeper)を
バックグラウンドタスクとして開始する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from . import config
from .cache import Cache
from .errors import ReservationFailure
from .locks import DistributedLock
from .rate_limit import RateLimiter
from .reservations import ReservationEngine
from .store import RedisStore
from .sweeper import ReservationSweeper, stop as stop_sweeper

logger = logging.getLogger(__name__)

store: RedisStore | None = None
cache: Cache | None = None
engine: ReservationEngine | None = None
limiter: RateLimiter | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global store, cache, engine, limiter
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = RedisStore.from_url(
        config.REDIS_URL,
        namespace=config.REDIS_NAMESPACE,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
    )
    cache = Cache(
        store,
        default_ttl=config.CACHE_TTL_DEFAULT,
        product_ttl=config.CACHE_TTL_PRODUCT,
        category_ttl=config.CACHE_TTL_CATEGORY,
        session_ttl=config.CACHE_TTL_SESSION,
        analytics_ttl=config.CACHE_TTL_ANALYTICS,
    )
    engine = ReservationEngine(
        store,
        events_channel=config.EVENTS_CHANNEL,
        default_ttl=config.RESERVATION_TTL_SECONDS,
    )
    limiter = RateLimiter(store)
    sweeper = ReservationSweeper(
        store,
        DistributedLock(store),
        events_channel=config.EVENTS_CHANNEL,
        batch_size=config.SWEEP_BATCH_SIZE,
        lock_ttl=config.SWEEP_LOCK_TTL_SECONDS,
    )

    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(
        sweeper.run(shutdown_event, config.SWEEP_INTERVAL_SECONDS)
    )
    yield
    await stop_sweeper(sweeper_task, shutdown_event, config.SWEEP_SHUTDOWN_TIMEOUT_SECONDS)
    await store.close()


app = FastAPI(title="Stock Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class StockLevelRequest(BaseModel):
    quantity: int = Field(ge=0)


class RestockRequest(BaseModel):
    quantity: int = Field(gt=0)


class ReserveRequest(BaseModel):
    quantity: int = Field(gt=0)
    reservation_id: str | None = None
    ttl_seconds: int | None = Field(default=None, gt=0)


# ── Dependencies ─────────────────────────────────


async def enforce_rate_limit(request: Request, response: Response) -> None:
    """クライアント IP ごとに引き当てリクエスト数を制限する。"""
    client = request.client.host if request.client else "unknown"
    decision = await limiter.try_acquire(
        f"reserve:ip:{client}",
        config.RATE_LIMIT_REQUESTS,
        config.RATE_LIMIT_WINDOW_SECONDS,
    )
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(decision.reset_in_seconds)},
        )


# ── Command Endpoints (Write 側) ─────────────────


@app.put("/commands/stock/{product_id}")
async def cmd_set_stock(product_id: str, req: StockLevelRequest):
    """在庫数を設定する(商品表示用キャッシュも破棄する)"""
    if not await engine.set_stock(product_id, req.quantity):
        raise HTTPException(503, "Stock store unavailable")
    await cache.invalidate_product(product_id)
    return {"product_id": product_id, "available": req.quantity}


@app.post("/commands/stock/{product_id}/restock")
async def cmd_restock(product_id: str, req: RestockRequest):
    level = await engine.restock(product_id, req.quantity)
    if level is None:
        raise HTTPException(503, "Stock store unavailable")
    await cache.invalidate_product(product_id)
    return {"product_id": product_id, "available": level}


@app.post(
    "/commands/stock/{product_id}/reserve",
    dependencies=[Depends(enforce_rate_limit)],
)
async def cmd_reserve(product_id: str, req: ReserveRequest):
    """在庫引き当てコマンド"""
    reservation_id = req.reservation_id or str(uuid4())
    result = await engine.reserve(product_id, req.quantity, reservation_id, req.ttl_seconds)
    if not result.success:
        status = 503 if result.reason is ReservationFailure.STORE_UNAVAILABLE else 409
        raise HTTPException(
            status_code=status,
            detail={"reason": result.reason.value, "message": result.user_message},
        )
    return {"success": True, "reservation_id": result.reservation_id}


@app.post("/commands/reservations/{reservation_id}/release")
async def cmd_release(reservation_id: str):
    """在庫解放コマンド(補償トランザクション)"""
    return {"reservation_id": reservation_id, "released": await engine.release(reservation_id)}


@app.post("/commands/reservations/{reservation_id}/confirm")
async def cmd_confirm(reservation_id: str):
    """引き当て確定コマンド(注文完了時に呼ばれる)"""
    return {"reservation_id": reservation_id, "confirmed": await engine.confirm(reservation_id)}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/stock/{product_id}")
async def query_stock(product_id: str):
    available = await engine.get_stock(product_id)
    if available is None:
        raise HTTPException(404, "Stock not tracked for product")
    return {"product_id": product_id, "available": available}


@app.get("/queries/reservations/{reservation_id}")
async def query_reservation(reservation_id: str):
    record = await engine.get_reservation(reservation_id)
    if record is None:
        raise HTTPException(404, "Reservation not found")
    return record.model_dump()


@app.get("/health")
async def health():
    reachable = await store.ping()
    return {
        "status": "ok" if reachable else "degraded",
        "service": "stock-service",
        "store": reachable,
    }

"""
Stock Service — イベント定義

在庫ドメインで発生するイベント。inventory_events チャネルに
{"event_type": ..., "data": ...} の形で Redis Pub/Sub 発行する。
"""

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel

from .errors import ReservationFailure, StoreError

if TYPE_CHECKING:
    from .store import RedisStore

logger = logging.getLogger(__name__)


class StockReserved(BaseModel):
    """在庫が引き当てられた"""
    product_id: str
    reservation_id: str
    quantity: int
    expires_at: int
    timestamp: datetime


class StockReservationFailed(BaseModel):
    """在庫引き当てが失敗した"""
    product_id: str
    reservation_id: str
    quantity_requested: int
    reason: ReservationFailure
    timestamp: datetime


class StockReleased(BaseModel):
    """引き当てが解放され、在庫が戻された(補償トランザクション)"""
    product_id: str
    reservation_id: str
    quantity: int
    timestamp: datetime


class ReservationConfirmed(BaseModel):
    """引き当てが確定した(在庫の減算が確定)"""
    product_id: str
    reservation_id: str
    quantity: int
    timestamp: datetime


class ReservationExpired(BaseModel):
    """確定も解放もされずに期限切れになり、在庫が戻された"""
    product_id: str
    reservation_id: str
    quantity: int
    timestamp: datetime


class StockAdjusted(BaseModel):
    """在庫数が管理操作で変更された"""
    product_id: str
    quantity: int
    absolute: bool
    timestamp: datetime


async def publish(store: "RedisStore", channel: str | None, event: BaseModel) -> None:
    """
    イベントを Pub/Sub に発行する。

    Pub/Sub は fire-and-forget なので、発行に失敗しても操作自体は失敗させない。
    """
    if not channel:
        return
    message = json.dumps(
        {"event_type": type(event).__name__, "data": event.model_dump(mode="json")},
        default=str,
    )
    try:
        await store.publish(channel, message)
    except StoreError:
        logger.warning("Failed to publish %s", type(event).__name__, exc_info=True)

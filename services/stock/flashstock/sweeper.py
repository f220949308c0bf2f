"""
Stock Service — 期限切れ引き当ての回収

確定 (confirm) も解放 (release) もされないまま TTL が切れた引き当ては、
記録が消えるだけで在庫カウンタは戻らない。放置すると在庫がリークする。

reservation:expiry (score = expiresAt) を定期的に走査し、期限を過ぎた
エントリを ZREM で取得できたものだけ在庫を戻す。confirm / release と
同じ ZREM を奪い合うので、二重に戻すことはない。ZREM と在庫の戻しは
1 つの Lua スクリプトで行うので、途中で止まっても在庫は失われない。

複数レプリカで動かしても、分散ロックで同時に走査するのは 1 台だけ。
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from . import events
from .errors import StoreError
from .locks import DistributedLock
from .models import ReservationRecord
from .reservations import EXPIRY_INDEX, reservation_key, stock_key
from .store import RedisStore

logger = logging.getLogger(__name__)

LOCK_NAME = "reservation-sweeper"


class ReservationSweeper:
    def __init__(
        self,
        store: RedisStore,
        lock: DistributedLock,
        events_channel: str | None = "inventory_events",
        batch_size: int = 100,
        lock_ttl: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.lock = lock
        self.events_channel = events_channel
        self.batch_size = batch_size
        self.lock_ttl = lock_ttl
        self.clock = clock

    async def sweep_once(self, now: float | None = None) -> int:
        """期限切れの引き当てを回収し、在庫を戻した件数を返す。"""
        now_ms = int((self.clock() if now is None else now) * 1000)
        restored = 0
        async with self.lock.held(LOCK_NAME, self.lock_ttl) as token:
            if token is None:
                logger.debug("Another sweeper holds the lock, skipping")
                return 0
            try:
                while True:
                    due = await self.store.due_in_index(EXPIRY_INDEX, now_ms, self.batch_size)
                    for payload in due:
                        if await self._expire(payload):
                            restored += 1
                    if len(due) < self.batch_size:
                        break
            except StoreError:
                logger.warning("Reservation sweep interrupted", exc_info=True)
        return restored

    async def run(self, shutdown_event: asyncio.Event, interval: float) -> None:
        """shutdown_event がセットされるまで interval 秒ごとに回収する。"""
        logger.info("Reservation sweeper started (every %ss)", interval)
        while not shutdown_event.is_set():
            try:
                restored = await self.sweep_once()
                if restored:
                    logger.info("Restored stock for %d expired reservations", restored)
            except Exception:
                logger.exception("Reservation sweep failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reservation sweeper stopped")

    async def _expire(self, payload: str) -> bool:
        try:
            record = ReservationRecord.from_payload(payload)
        except ValidationError:
            # 壊れたエントリは在庫を戻しようがないのでインデックスから外すだけ
            if await self.store.remove_from_index(EXPIRY_INDEX, payload):
                logger.error("Dropping corrupt expiry entry %r", payload)
            return False

        # 記録は値が payload のままの場合だけ消える。
        # 同じ ID で作り直された新しい引き当ては残る
        settled = await self.store.settle_indexed(
            EXPIRY_INDEX,
            payload,
            reservation_key(record.reservation_id),
            stock_key(record.product_id),
            record.quantity,
        )
        if not settled:
            return False

        logger.info(
            "Reservation %s expired, restored %d of %s",
            record.reservation_id,
            record.quantity,
            record.product_id,
        )
        await events.publish(
            self.store,
            self.events_channel,
            events.ReservationExpired(
                product_id=record.product_id,
                reservation_id=record.reservation_id,
                quantity=record.quantity,
                timestamp=datetime.fromtimestamp(self.clock(), timezone.utc),
            ),
        )
        return True


async def stop(task: asyncio.Task, shutdown_event: asyncio.Event, timeout: float) -> None:
    """
    run() のタスクを止める。

    まず shutdown_event で実行中の走査を最後まで終わらせ、timeout 秒以内に
    終わらなければキャンセルする。
    """
    shutdown_event.set()
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Reservation sweeper did not stop within %ss, cancelled", timeout)

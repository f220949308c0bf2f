"""
Stock Service — 在庫引き当てエンジン

フラッシュセール向けの在庫仮押さえ。在庫カウンタ stock:{product_id} を
DECRBY で原子的に減らし、期限付きの引き当て記録 reservation:{id} を書く。

状態遷移 (product_id, reservation_id ごと):
    NONE → HELD   (reserve 成功)
    HELD → NONE   (confirm: 在庫の減算が確定)
    HELD → NONE   (release: 在庫を戻す = 補償トランザクション)
    HELD → NONE   (期限切れ: sweeper が在庫を戻す)

チェックしてから減らすのではなく、減らしてからチェックする:
  DECRBY だけが呼び出し元をまたいで直列化される唯一の地点。
  結果が負なら INCRBY で戻して失敗とする。ロックを使わないので
  同一商品への同時引き当てがいくつあっても詰まらない。

引き当て記録は reservation:expiry (sorted set, score = expiresAt) にも登録する。
confirm / release / sweeper はいずれも RedisStore.settle_indexed で処理する。
ZREM による権利の取得と在庫の戻しが 1 つの Lua スクリプトで行われるので、
二重に解放・確定されることも、権利だけ消えて在庫が戻らないこともない。
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from . import events
from .errors import ReservationFailure, StoreError
from .models import ReservationRecord, ReservationResult
from .store import RedisStore

logger = logging.getLogger(__name__)

EXPIRY_INDEX = "reservation:expiry"


def stock_key(product_id: str) -> str:
    return f"stock:{product_id}"


def reservation_key(reservation_id: str) -> str:
    return f"reservation:{reservation_id}"


class ReservationEngine:
    def __init__(
        self,
        store: RedisStore,
        events_channel: str | None = "inventory_events",
        default_ttl: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.events_channel = events_channel
        self.default_ttl = default_ttl
        self.clock = clock

    # ── コマンド ─────────────────────────────────────

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        reservation_id: str,
        ttl_seconds: int | None = None,
    ) -> ReservationResult:
        """
        在庫引き当てコマンド

        1. 在庫カウンタを読み、明らかに足りなければ即失敗 (高速パス、原子的ではない)
        2. DECRBY で原子的に減算
        3. 結果が負なら INCRBY で戻して失敗 (売り越しの補償)
        4. 引き当て記録 (SET NX) と期限インデックスを 1 つのスクリプトで書く。
           書けなければ (障害・同じ ID が先に記録済み) 減算を戻す
        """
        _require(product_id, "product_id")
        _require(reservation_id, "reservation_id")
        _validate_quantity(quantity)
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        key = stock_key(product_id)
        try:
            if await self.store.get(reservation_key(reservation_id)) is not None:
                return await self._failed(
                    product_id, reservation_id, quantity, ReservationFailure.DUPLICATE
                )

            current = await self.store.get(key)
            # カウンタがない商品は高速パスでは判定せず、DECRBY の結果に任せる
            if current is not None:
                level = _level(key, current)
                if level is None:
                    return ReservationResult.failed(ReservationFailure.STORE_UNAVAILABLE)
                if level < quantity:
                    return await self._failed(
                        product_id, reservation_id, quantity, ReservationFailure.INSUFFICIENT_STOCK
                    )

            remaining = await self.store.decr_by(key, quantity)
        except StoreError:
            logger.warning(
                "Reservation %s for %s failed", reservation_id, product_id, exc_info=True
            )
            return ReservationResult.failed(ReservationFailure.STORE_UNAVAILABLE)

        if remaining < 0:
            await self._restore(product_id, quantity)
            return await self._failed(
                product_id, reservation_id, quantity, ReservationFailure.NO_LONGER_AVAILABLE
            )

        expires_at = int((self.clock() + ttl) * 1000)
        record = ReservationRecord(
            reservation_id=reservation_id,
            product_id=product_id,
            quantity=quantity,
            expires_at=expires_at,
        )
        try:
            written = await self.store.write_indexed(
                reservation_key(reservation_id), record.to_payload(), ttl, EXPIRY_INDEX, expires_at
            )
        except StoreError:
            logger.warning(
                "Failed to record reservation %s, rolling back", reservation_id, exc_info=True
            )
            await self._restore(product_id, quantity)
            return ReservationResult.failed(ReservationFailure.STORE_UNAVAILABLE)

        if not written:
            # 同じ ID の同時リクエストに先を越された
            await self._restore(product_id, quantity)
            return await self._failed(
                product_id, reservation_id, quantity, ReservationFailure.DUPLICATE
            )

        logger.info(
            "Reserved %d of %s as %s (%d left)", quantity, product_id, reservation_id, remaining
        )
        await events.publish(
            self.store,
            self.events_channel,
            events.StockReserved(
                product_id=product_id,
                reservation_id=reservation_id,
                quantity=quantity,
                expires_at=expires_at,
                timestamp=self._now(),
            ),
        )
        return ReservationResult.ok(reservation_id)

    async def release(self, reservation_id: str) -> bool:
        """
        在庫解放コマンド(補償トランザクション)

        注文が放棄・失敗した場合に引き当て済みの在庫を戻す。
        記録がなければ何もしない(再試行しても安全)。在庫を戻したら True。
        ストア障害で失敗した場合は何も変わっていないので、再試行すれば戻せる。
        """
        record = await self._settle(reservation_id, restore=True)
        if record is None:
            return False

        logger.info("Released %d of %s from %s", record.quantity, record.product_id, reservation_id)
        await events.publish(
            self.store,
            self.events_channel,
            events.StockReleased(
                product_id=record.product_id,
                reservation_id=reservation_id,
                quantity=record.quantity,
                timestamp=self._now(),
            ),
        )
        return True

    async def confirm(self, reservation_id: str) -> bool:
        """
        引き当て確定コマンド

        記録を消すだけで在庫カウンタには触れない(減算が確定する)。
        期限切れで既に在庫が戻されている場合は False。
        """
        record = await self._settle(reservation_id, restore=False)
        if record is None:
            return False

        logger.info(
            "Confirmed reservation %s (%d of %s)",
            reservation_id,
            record.quantity,
            record.product_id,
        )
        await events.publish(
            self.store,
            self.events_channel,
            events.ReservationConfirmed(
                product_id=record.product_id,
                reservation_id=reservation_id,
                quantity=record.quantity,
                timestamp=self._now(),
            ),
        )
        return True

    async def set_stock(self, product_id: str, quantity: int) -> bool:
        """在庫数を絶対値で設定する(セール開始時の投入など)。"""
        _require(product_id, "product_id")
        if quantity < 0:
            raise ValueError("quantity must not be negative")
        try:
            await self.store.set(stock_key(product_id), str(quantity))
        except StoreError:
            logger.warning("Failed to set stock for %s", product_id, exc_info=True)
            return False
        await self._adjusted(product_id, quantity, absolute=True)
        return True

    async def restock(self, product_id: str, quantity: int) -> int | None:
        """在庫を原子的に追加し、追加後の在庫数を返す。"""
        _require(product_id, "product_id")
        _validate_quantity(quantity)
        try:
            level = await self.store.incr_by(stock_key(product_id), quantity)
        except StoreError:
            logger.warning("Failed to restock %s", product_id, exc_info=True)
            return None
        await self._adjusted(product_id, quantity, absolute=False)
        return level

    # ── クエリ ───────────────────────────────────────

    async def get_stock(self, product_id: str) -> int | None:
        try:
            value = await self.store.get(stock_key(product_id))
        except StoreError:
            logger.warning("Failed to read stock for %s", product_id, exc_info=True)
            return None
        return _level(stock_key(product_id), value) if value is not None else None

    async def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        try:
            payload = await self.store.get(reservation_key(reservation_id))
        except StoreError:
            logger.warning("Failed to read reservation %s", reservation_id, exc_info=True)
            return None
        return _parse(reservation_id, payload)

    # ── 内部処理 ─────────────────────────────────────

    async def _settle(self, reservation_id: str, restore: bool) -> ReservationRecord | None:
        """
        記録を読み、インデックスからの ZREM と (restore なら) 在庫の戻し、
        記録の削除を 1 ステップで行う。権利を取れた場合だけ記録を返す。
        """
        key = reservation_key(reservation_id)
        try:
            payload = await self.store.get(key)
            record = _parse(reservation_id, payload)
            if record is None:
                return None
            settled = await self.store.settle_indexed(
                EXPIRY_INDEX,
                payload,
                key,
                stock_key(record.product_id),
                record.quantity if restore else 0,
            )
        except StoreError:
            logger.warning("Failed to settle reservation %s", reservation_id, exc_info=True)
            return None
        return record if settled else None

    async def _restore(self, product_id: str, quantity: int) -> None:
        try:
            await self.store.incr_by(stock_key(product_id), quantity)
        except StoreError:
            logger.exception(
                "Could not roll back %d of %s; stock counter needs reconciliation",
                quantity,
                product_id,
            )

    async def _failed(
        self,
        product_id: str,
        reservation_id: str,
        quantity: int,
        reason: ReservationFailure,
    ) -> ReservationResult:
        logger.info("Reservation %s for %s rejected: %s", reservation_id, product_id, reason.value)
        await events.publish(
            self.store,
            self.events_channel,
            events.StockReservationFailed(
                product_id=product_id,
                reservation_id=reservation_id,
                quantity_requested=quantity,
                reason=reason,
                timestamp=self._now(),
            ),
        )
        return ReservationResult.failed(reason)

    async def _adjusted(self, product_id: str, quantity: int, absolute: bool) -> None:
        change = "set to" if absolute else "increased by"
        logger.info("Stock for %s %s %d", product_id, change, quantity)
        await events.publish(
            self.store,
            self.events_channel,
            events.StockAdjusted(
                product_id=product_id,
                quantity=quantity,
                absolute=absolute,
                timestamp=self._now(),
            ),
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), timezone.utc)


def _parse(reservation_id: str, payload: str | None) -> ReservationRecord | None:
    if payload is None:
        return None
    try:
        return ReservationRecord.from_payload(payload)
    except ValidationError:
        logger.error("Corrupt reservation record %s: %r", reservation_id, payload)
        return None


def _require(value: str, name: str) -> None:
    if not value:
        raise ValueError(f"{name} must not be empty")


def _validate_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError("quantity must be a positive integer")


def _level(key: str, value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        logger.error("Stock counter %s is not an integer: %r", key, value)
        return None

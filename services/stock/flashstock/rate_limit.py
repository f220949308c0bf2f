"""
Stock Service — レート制限 (固定ウィンドウ)

ratelimit:{key} を INCR し、最初の INCR (値が 1) のときだけ EXPIRE を設定する。
ウィンドウの開始は最初のリクエストに固定され、以降のリクエストでは延長しない。

ストアに到達できない場合はフェイルオープン(許可)する。
レート制限は多層防御の一つであり、キャッシュ障害を全面停止に変えないため。
"""

import logging

from .errors import StoreError
from .models import RateLimitDecision
from .store import RedisStore

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, store: RedisStore) -> None:
        self.store = store

    async def try_acquire(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        if not key:
            raise ValueError("rate limit key must not be empty")
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit must be >= 1 and window_seconds > 0")

        counter = f"ratelimit:{key}"
        try:
            current = await self.store.incr_by(counter, 1)
            # INCR の戻り値で作成者が一意に決まるので、EXPIRE を打つのは 1 回だけ
            if current == 1:
                await self.store.expire(counter, window_seconds)
            reset_in = await self.store.ttl(counter)
            if reset_in == -1:
                # 作成者が INCR と EXPIRE の間で落ちた
                await self.store.expire(counter, window_seconds)
                reset_in = window_seconds
        except StoreError:
            logger.warning("Rate limiter unavailable for %s, failing open", key, exc_info=True)
            return RateLimitDecision(
                allowed=True, remaining=limit, reset_in_seconds=window_seconds
            )

        decision = RateLimitDecision(
            allowed=current <= limit,
            remaining=max(0, limit - current),
            reset_in_seconds=max(reset_in, 0),
        )
        if not decision.allowed:
            logger.debug("Rate limit exceeded for %s (%d/%d)", key, current, limit)
        return decision

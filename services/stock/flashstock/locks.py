"""
Stock Service — 分散ロック

lock:{name} に SET NX EX でトークンを書き込む。
トークンは取得ごとに一意(有効期限ミリ秒 + uuid4)なので、
ロックが期限切れで他者に再取得された後に、元の保持者が
誤って解放してしまうことはない。

解放は GET と DEL を Lua スクリプトで 1 ステップにまとめて行う。
保持者がクラッシュしても TTL で自然に解放される。

在庫引き当てエンジン自体は DECRBY の原子性に依存しており、このロックは使わない。
複数ステップにまたがる非原子的な処理(期限切れ引き当ての回収など)を直列化するためのもの。
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable
from uuid import uuid4

from .errors import StoreError
from .store import RedisStore

logger = logging.getLogger(__name__)


class DistributedLock:
    def __init__(self, store: RedisStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    async def acquire(self, lock_name: str, ttl_seconds: int = 30) -> str | None:
        """
        ロックを取得する。成功したらトークンを返し、他者が保持中なら None。

        ストア障害時は「取得できなかった」とみなす(フェイルクローズ)。
        """
        _validate(lock_name, ttl_seconds)
        expires_ms = int(self.clock() * 1000) + ttl_seconds * 1000
        token = f"{expires_ms}:{uuid4().hex}"
        try:
            acquired = await self.store.set_if_absent(f"lock:{lock_name}", token, ttl_seconds)
        except StoreError:
            logger.warning("Lock acquire error for %s", lock_name, exc_info=True)
            return None
        return token if acquired else None

    async def release(self, lock_name: str, token: str) -> bool:
        """トークンが一致する場合だけ解放する。解放できたら True。"""
        try:
            return await self.store.delete_if_equals(f"lock:{lock_name}", token)
        except StoreError:
            # 解放できなくても TTL で自然に解放される
            logger.warning("Lock release error for %s", lock_name, exc_info=True)
            return False

    @asynccontextmanager
    async def held(self, lock_name: str, ttl_seconds: int = 30) -> AsyncIterator[str | None]:
        """
        async with lock.held("name") as token: の形で使う。

        取得できなかった場合 token は None。取得できた場合のみ抜けるときに解放する。
        """
        token = await self.acquire(lock_name, ttl_seconds)
        try:
            yield token
        finally:
            if token is not None:
                await self.release(lock_name, token)


def _validate(lock_name: str, ttl_seconds: int) -> None:
    if not lock_name:
        raise ValueError("lock name must not be empty")
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")

"""
Stock Service — キャッシュファサード

商品・カテゴリ・カート・セッション・分析データ用の型付きヘルパー。

キャッシュはあくまで最適化レイヤーであり、正しさの根拠にはしない。
ストアが落ちていても例外は送出せず「常にミス」として振る舞う。

キー命名規則 (他サービスと共有するため変更しないこと):
- product:{product_id}                        — 商品 (TTL 30 分)
- category:{category_id}:products:{hash}      — カテゴリ別商品一覧 (TTL 1 時間)
- categories:all                              — カテゴリ一覧 (TTL 1 時間)
- cart:{user_id} / session:{user_id}          — カート・セッション (TTL 24 時間)
- analytics:{key}                             — 集計結果 (TTL 5 分)
"""

import hashlib
import inspect
import json
import logging
from typing import Any, Awaitable, Callable

from .errors import StoreError
from .store import RedisStore

logger = logging.getLogger(__name__)

_DEFAULT = object()


class Cache:
    def __init__(
        self,
        store: RedisStore,
        default_ttl: int = 3600,
        product_ttl: int = 1800,
        category_ttl: int = 3600,
        session_ttl: int = 86400,
        analytics_ttl: int = 300,
    ) -> None:
        self.store = store
        self.default_ttl = default_ttl
        self.product_ttl = product_ttl
        self.category_ttl = category_ttl
        self.session_ttl = session_ttl
        self.analytics_ttl = analytics_ttl

    # ── 汎用操作 ─────────────────────────────────────

    async def get(self, key: str) -> Any | None:
        """キャッシュ値を取得する。ミス・ストア障害・破損データはすべて None。"""
        try:
            payload = await self.store.get(key)
        except StoreError:
            logger.warning("Cache read error for %s", key, exc_info=True)
            return None
        return self._decode(key, payload)

    async def set(self, key: str, value: Any, ttl: Any = _DEFAULT) -> bool:
        """値を保存する。ttl が 0 / None なら期限なし。失敗しても例外は出さない。"""
        if ttl is _DEFAULT:
            ttl = self.default_ttl
        try:
            await self.store.set(key, json.dumps(value, default=str), ttl)
            return True
        except StoreError:
            logger.warning("Cache write error for %s", key, exc_info=True)
            return False

    async def invalidate(self, key: str) -> bool:
        try:
            await self.store.delete(key)
            return True
        except StoreError:
            logger.warning("Cache invalidation error for %s", key, exc_info=True)
            return False

    async def invalidate_pattern(self, pattern: str) -> int:
        """glob パターンに一致するキーをまとめて削除し、削除数を返す。"""
        try:
            keys = await self.store.keys(pattern)
            if not keys:
                return 0
            return await self.store.delete(*keys)
        except StoreError:
            logger.warning("Cache invalidation error for pattern %s", pattern, exc_info=True)
            return 0

    async def get_or_set(
        self,
        key: str,
        compute: Callable[[], Any | Awaitable[Any]],
        ttl: Any = _DEFAULT,
    ) -> Any:
        """
        キャッシュにあればそれを返し、なければ compute() の結果を保存して返す。

        ストアに到達できない場合は compute() を直接呼び、結果はキャッシュしない。
        compute() 自身の例外はそのまま呼び出し元に伝播する。
        """
        try:
            payload = await self.store.get(key)
        except StoreError:
            logger.warning("Cache unavailable for %s, computing directly", key, exc_info=True)
            return await _resolve(compute)

        cached = self._decode(key, payload)
        if cached is not None:
            return cached

        value = await _resolve(compute)
        if value is not None:
            await self.set(key, value, ttl)
        return value

    def _decode(self, key: str, payload: str | None) -> Any | None:
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except ValueError:
            logger.warning("Discarding corrupt cache entry %s", key)
            return None

    # ── 商品 ─────────────────────────────────────────

    async def get_product(self, product_id: str) -> dict | None:
        return await self.get(f"product:{product_id}")

    async def set_product(self, product_id: str, data: dict, ttl: Any = _DEFAULT) -> bool:
        return await self.set(
            f"product:{product_id}", data, self.product_ttl if ttl is _DEFAULT else ttl
        )

    async def invalidate_product(self, product_id: str, category_id: str | None = None) -> None:
        """商品の更新時に呼ぶ。category_id を渡すとそのカテゴリの一覧キャッシュも消す。"""
        await self.invalidate(f"product:{product_id}")
        if category_id is not None:
            await self.invalidate_products_by_category(category_id)

    # ── カテゴリ ─────────────────────────────────────

    @staticmethod
    def listing_key(category_id: str, query: dict[str, Any]) -> str:
        """
        カテゴリ別一覧のキャッシュキーを生成する。

        クエリはキー順にソートしてからハッシュするので、dict の順序に依存しない。
        None 値は条件なしとみなして除外する。
        """
        stable = {k: v for k, v in sorted(query.items()) if v is not None}
        raw = json.dumps(stable, sort_keys=True, default=str)
        digest = hashlib.sha256(raw.encode()).hexdigest()[:16]
        return f"category:{category_id}:products:{digest}"

    async def get_category_listing(self, category_id: str, query: dict[str, Any]) -> list | None:
        return await self.get(self.listing_key(category_id, query))

    async def set_category_listing(
        self, category_id: str, query: dict[str, Any], products: list
    ) -> bool:
        return await self.set(self.listing_key(category_id, query), products, self.category_ttl)

    async def invalidate_products_by_category(self, category_id: str) -> int:
        return await self.invalidate_pattern(f"category:{category_id}:products:*")

    async def get_categories(self) -> list | None:
        return await self.get("categories:all")

    async def set_categories(self, categories: list) -> bool:
        return await self.set("categories:all", categories, self.category_ttl)

    async def invalidate_categories(self) -> bool:
        return await self.invalidate("categories:all")

    # ── カート・セッション ───────────────────────────

    async def get_cart(self, user_id: str) -> dict | None:
        return await self.get(f"cart:{user_id}")

    async def set_cart(self, user_id: str, cart: dict) -> bool:
        return await self.set(f"cart:{user_id}", cart, self.session_ttl)

    async def invalidate_cart(self, user_id: str) -> bool:
        return await self.invalidate(f"cart:{user_id}")

    async def get_session(self, user_id: str) -> dict | None:
        return await self.get(f"session:{user_id}")

    async def set_session(self, user_id: str, session: dict) -> bool:
        return await self.set(f"session:{user_id}", session, self.session_ttl)

    async def invalidate_session(self, user_id: str) -> bool:
        return await self.invalidate(f"session:{user_id}")

    # ── 分析 ─────────────────────────────────────────

    async def get_analytics(self, key: str) -> Any | None:
        return await self.get(f"analytics:{key}")

    async def set_analytics(self, key: str, data: Any) -> bool:
        return await self.set(f"analytics:{key}", data, self.analytics_ttl)

    async def ping(self) -> bool:
        return await self.store.ping()


async def _resolve(compute: Callable[[], Any | Awaitable[Any]]) -> Any:
    result = compute()
    if inspect.isawaitable(result):
        result = await result
    return result

"""
Stock Service — KV ストアクライアント

redis.asyncio の薄いラッパー。単一キーの原子的操作
(INCRBY / DECRBY / SET NX EX) と、複数キーをまとめる Lua スクリプトに依存する。

redis の例外はすべて StoreError に変換して送出する。
どう劣化させるか(キャッシュミス扱い・フェイルオープンなど)は
呼び出し側の各コンポーネントが操作ごとに決める。

namespace を指定するとすべてのキーに接頭辞が付く
(テストごとに独立した名前空間を使う場合など)。
"""

from contextlib import contextmanager
from typing import Iterator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import StoreError

# GET と DEL を 1 ステップで行う(所有者チェック付きロック解放用)
_DELETE_IF_EQUALS = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

# キーが未使用のときだけ SET EX し、同時にインデックスへ登録する
_WRITE_INDEXED = """
if redis.call('SET', KEYS[1], ARGV[1], 'NX', 'EX', ARGV[2]) then
  redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
  return 1
end
return 0
"""

# インデックスからの ZREM に成功した場合だけ、カウンタを戻して記録を消す
_SETTLE_INDEXED = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
  return 0
end
if tonumber(ARGV[2]) > 0 then
  redis.call('INCRBY', KEYS[3], ARGV[2])
end
if redis.call('GET', KEYS[2]) == ARGV[1] then
  redis.call('DEL', KEYS[2])
end
return 1
"""


class RedisStore:
    def __init__(self, client: aioredis.Redis, namespace: str = "") -> None:
        self.client = client
        self.namespace = namespace
        self._delete_if_equals = client.register_script(_DELETE_IF_EQUALS)
        self._write_indexed = client.register_script(_WRITE_INDEXED)
        self._settle_indexed = client.register_script(_SETTLE_INDEXED)

    @classmethod
    def from_url(
        cls,
        url: str,
        namespace: str = "",
        socket_timeout: float = 2.0,
    ) -> "RedisStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client, namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def _strip(self, key: str) -> str:
        if self.namespace:
            return key[len(self.namespace) + 1:]
        return key

    @contextmanager
    def _guard(self, operation: str, key: str | None = None) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            raise StoreError(operation, key) from e

    # ── 基本操作 ─────────────────────────────────────

    async def get(self, key: str) -> str | None:
        with self._guard("GET", key):
            return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """ttl が 0 / None なら有効期限なしで保存する。"""
        with self._guard("SET", key):
            await self.client.set(self._key(key), value, ex=ttl or None)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """SET NX EX — キーが存在しない場合のみ保存し、成功したら True"""
        with self._guard("SETNX", key):
            return bool(await self.client.set(self._key(key), value, nx=True, ex=ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._guard("DEL", keys[0]):
            return await self.client.delete(*(self._key(k) for k in keys))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        with self._guard("DEL-IF-EQ", key):
            deleted = await self._delete_if_equals(keys=[self._key(key)], args=[value])
            return bool(deleted)

    async def incr_by(self, key: str, amount: int = 1) -> int:
        with self._guard("INCRBY", key):
            return int(await self.client.incrby(self._key(key), amount))

    async def decr_by(self, key: str, amount: int = 1) -> int:
        with self._guard("DECRBY", key):
            return int(await self.client.decrby(self._key(key), amount))

    async def expire(self, key: str, ttl: int) -> bool:
        with self._guard("EXPIRE", key):
            return bool(await self.client.expire(self._key(key), ttl))

    async def ttl(self, key: str) -> int:
        """残り秒数。期限なしは -1、キーなしは -2。"""
        with self._guard("TTL", key):
            return int(await self.client.ttl(self._key(key)))

    async def keys(self, pattern: str) -> list[str]:
        """glob パターンに一致するキー一覧。KEYS ではなく SCAN で走査する。"""
        with self._guard("SCAN", pattern):
            return [
                self._strip(k)
                async for k in self.client.scan_iter(match=self._key(pattern), count=100)
            ]

    # ── 有効期限インデックス (sorted set) ────────────

    async def write_indexed(
        self,
        key: str,
        value: str,
        ttl: int,
        index: str,
        score: float,
    ) -> bool:
        """
        キーが存在しない場合だけ値を保存し、同じスクリプト内でインデックスへ登録する。

        インデックスのメンバーは value そのもの。既にキーがあれば何もせず False。
        """
        with self._guard("WRITE-INDEXED", key):
            written = await self._write_indexed(
                keys=[self._key(key), self._key(index)],
                args=[value, ttl, score],
            )
            return bool(written)

    async def settle_indexed(
        self,
        index: str,
        member: str,
        key: str,
        counter: str,
        amount: int = 0,
    ) -> bool:
        """
        インデックスから member を ZREM できた場合だけ、counter に amount を
        INCRBY し、key の値が member のままなら削除する。

        3 つの操作は 1 つの Lua スクリプトで実行されるので、途中で失敗・中断して
        権利だけが消えることはない。ZREM できた呼び出し元だけが True を受け取る。
        """
        with self._guard("SETTLE", key):
            settled = await self._settle_indexed(
                keys=[self._key(index), self._key(key), self._key(counter)],
                args=[member, amount],
            )
            return bool(settled)

    async def remove_from_index(self, index: str, member: str) -> bool:
        """ZREM — 実際に削除できた呼び出し元だけが True を受け取る。"""
        with self._guard("ZREM", index):
            return await self.client.zrem(self._key(index), member) == 1

    async def due_in_index(self, index: str, max_score: float, limit: int) -> list[str]:
        with self._guard("ZRANGEBYSCORE", index):
            return await self.client.zrangebyscore(
                self._key(index), "-inf", max_score, start=0, num=limit
            )

    # ── Pub/Sub ・ 管理 ──────────────────────────────

    async def publish(self, channel: str, message: str) -> None:
        with self._guard("PUBLISH", channel):
            await self.client.publish(self._key(channel), message)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()

"""
Tests for the Redis wrapper: key prefixing, argument mapping, and
translating redis errors into StoreError.

The redis client is mocked; no server is needed.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from flashstock.errors import StoreError
from flashstock.store import RedisStore


@pytest.fixture
def client():
    c = MagicMock()
    c.register_script.return_value = AsyncMock(return_value=1)
    return c


@pytest.fixture
def store(client):
    return RedisStore(client)


class TestErrorTranslation:
    async def test_connection_error_becomes_store_error(self, store, client):
        client.get = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(StoreError) as exc_info:
            await store.get("stock:p1")
        assert exc_info.value.key == "stock:p1"
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    async def test_timeout_becomes_store_error(self, store, client):
        client.decrby = AsyncMock(side_effect=RedisTimeoutError("slow"))
        with pytest.raises(StoreError):
            await store.decr_by("stock:p1", 2)

    async def test_ping_never_raises(self, store, client):
        client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await store.ping() is False

    async def test_other_errors_propagate_unchanged(self, store, client):
        client.get = AsyncMock(side_effect=TypeError("bug"))
        with pytest.raises(TypeError):
            await store.get("k")


class TestCommands:
    async def test_set_without_ttl(self, store, client):
        client.set = AsyncMock(return_value=True)
        await store.set("k", "v", 0)
        client.set.assert_awaited_once_with("k", "v", ex=None)

    async def test_set_with_ttl(self, store, client):
        client.set = AsyncMock(return_value=True)
        await store.set("k", "v", 30)
        client.set.assert_awaited_once_with("k", "v", ex=30)

    async def test_set_if_absent(self, store, client):
        client.set = AsyncMock(return_value=None)
        assert await store.set_if_absent("lock:L", "t", 30) is False
        client.set.assert_awaited_once_with("lock:L", "t", nx=True, ex=30)

    async def test_incr_and_decr_return_ints(self, store, client):
        client.incrby = AsyncMock(return_value=7)
        client.decrby = AsyncMock(return_value=-1)
        assert await store.incr_by("stock:p1", 2) == 7
        assert await store.decr_by("stock:p1", 3) == -1
        client.decrby.assert_awaited_once_with("stock:p1", 3)

    async def test_delete_nothing(self, store, client):
        client.delete = AsyncMock()
        assert await store.delete() == 0
        client.delete.assert_not_awaited()

    async def test_delete_if_equals_uses_script(self, store, client):
        script = client.register_script.return_value
        assert await store.delete_if_equals("lock:L", "token") is True
        script.assert_awaited_once_with(keys=["lock:L"], args=["token"])

    async def test_write_indexed_uses_script(self, store, client):
        script = client.register_script.return_value
        script.return_value = 1

        written = await store.write_indexed(
            "reservation:r1", "{}", 900, "reservation:expiry", 123
        )

        assert written is True
        script.assert_awaited_once_with(
            keys=["reservation:r1", "reservation:expiry"], args=["{}", 900, 123]
        )

    async def test_write_indexed_reports_existing_key(self, store, client):
        client.register_script.return_value.return_value = 0
        assert await store.write_indexed("reservation:r1", "{}", 900, "idx", 1) is False

    async def test_settle_indexed_passes_all_keys(self, store, client):
        script = client.register_script.return_value
        script.return_value = 0

        settled = await store.settle_indexed(
            "reservation:expiry", "{}", "reservation:r1", "stock:p1", 5
        )

        assert settled is False
        script.assert_awaited_once_with(
            keys=["reservation:expiry", "reservation:r1", "stock:p1"], args=["{}", 5]
        )

    async def test_script_errors_become_store_error(self, store, client):
        client.register_script.return_value.side_effect = RedisConnectionError("down")
        with pytest.raises(StoreError):
            await store.settle_indexed("idx", "{}", "reservation:r1", "stock:p1", 5)

    def test_registers_scripts(self, store, client):
        sources = [c.args[0] for c in client.register_script.call_args_list]
        assert len(sources) == 3
        assert any("'NX'" in s and "ZADD" in s for s in sources)
        assert any("ZREM" in s and "INCRBY" in s for s in sources)

    async def test_remove_from_index(self, store, client):
        client.zrem = AsyncMock(return_value=0)
        assert await store.remove_from_index("reservation:expiry", "m") is False


class TestNamespace:
    async def test_keys_are_prefixed(self, client):
        store = RedisStore(client, namespace="test")
        client.get = AsyncMock(return_value="5")
        assert await store.get("stock:p1") == "5"
        client.get.assert_awaited_once_with("test:stock:p1")

    async def test_scan_results_are_unprefixed(self, client):
        store = RedisStore(client, namespace="test")

        async def scan_iter(match, count):
            assert match == "test:category:c1:*"
            for key in ("test:category:c1:products:a", "test:category:c1:products:b"):
                yield key

        client.scan_iter = scan_iter
        assert await store.keys("category:c1:*") == [
            "category:c1:products:a",
            "category:c1:products:b",
        ]

    async def test_script_keys_are_prefixed(self, client):
        store = RedisStore(client, namespace="test")
        script = client.register_script.return_value
        await store.settle_indexed("reservation:expiry", "{}", "reservation:r1", "stock:p1", 2)
        script.assert_awaited_once_with(
            keys=["test:reservation:expiry", "test:reservation:r1", "test:stock:p1"],
            args=["{}", 2],
        )

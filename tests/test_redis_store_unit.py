"""Unit tests for RedisStore using a mocked redis.asyncio client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from chatcore.storage.errors import StoreError, WrongTypeError
from chatcore.storage.redis_cache import RedisStore


@pytest.fixture
def client():
    mock = MagicMock()
    for name in (
        "get",
        "set",
        "delete",
        "exists",
        "incr",
        "expire",
        "ttl",
        "sadd",
        "srem",
        "smembers",
        "sismember",
        "hset",
        "hdel",
        "hgetall",
        "publish",
        "ping",
        "aclose",
    ):
        setattr(mock, name, AsyncMock())
    return mock


@pytest.fixture
def store(client):
    return RedisStore("redis://localhost:6379/0", client=client)


class TestCommands:
    async def test_set_passes_expiry_and_nx(self, store, client):
        client.set.return_value = None
        assert await store.set("k", "v", ex=30, nx=True) is False
        client.set.assert_awaited_once_with("k", "v", ex=30, nx=True)

    async def test_counts_are_ints(self, store, client):
        client.incr.return_value = 3
        client.ttl.return_value = -1
        assert await store.incr("n") == 3
        assert await store.ttl("n") == -1

    async def test_smembers_returns_set(self, store, client):
        client.smembers.return_value = ["a", "b"]
        assert await store.smembers("s") == {"a", "b"}

    async def test_empty_variadic_calls_skip_round_trip(self, store, client):
        assert await store.delete() == 0
        assert await store.srem("s") == 0
        assert await store.hdel("h") == 0
        client.delete.assert_not_awaited()
        client.srem.assert_not_awaited()

    async def test_close_uses_aclose(self, store, client):
        await store.close()
        client.aclose.assert_awaited_once()


class TestErrorTranslation:
    async def test_connection_error_becomes_store_error(self, store, client):
        client.get.side_effect = RedisConnectionError("Connection refused")
        with pytest.raises(StoreError) as exc_info:
            await store.get("k")
        assert exc_info.value.detail == {"command": "get"}

    async def test_wrongtype_response(self, store, client):
        client.sadd.side_effect = ResponseError(
            "WRONGTYPE Operation against a key holding the wrong kind of value"
        )
        with pytest.raises(WrongTypeError):
            await store.sadd("k", "x")

    async def test_other_response_error_is_plain_store_error(self, store, client):
        client.incr.side_effect = ResponseError("value is not an integer or out of range")
        with pytest.raises(StoreError) as exc_info:
            await store.incr("k")
        assert not isinstance(exc_info.value, WrongTypeError)

    async def test_error_is_logged(self, store, client):
        client.publish.side_effect = RedisConnectionError("down")
        with patch("chatcore.storage.redis_cache.logger") as mock_logger:
            with pytest.raises(StoreError):
                await store.publish("chats-public", "{}")
        assert mock_logger.error.call_args[0][0] == "redis_command_failed"


class TestPipeline:
    async def test_pipeline_is_non_transactional(self, store, client):
        raw_pipe = MagicMock()
        raw_pipe.execute = AsyncMock(return_value=[True, 1])
        client.pipeline.return_value = raw_pipe

        pipe = store.pipeline()
        pipe.set("a", "1", ex=5).sadd("s", "a")
        assert await pipe.execute() == [True, 1]

        client.pipeline.assert_called_once_with(transaction=False)
        raw_pipe.set.assert_called_once_with("a", "1", ex=5, nx=False)
        raw_pipe.sadd.assert_called_once_with("s", "a")

    async def test_pipeline_failure_translated(self, store, client):
        raw_pipe = MagicMock()
        raw_pipe.execute = AsyncMock(side_effect=RedisConnectionError("reset"))
        client.pipeline.return_value = raw_pipe
        with pytest.raises(StoreError):
            await store.pipeline().execute()


def test_verify_connection_translates_failure():
    sync_client = MagicMock()
    sync_client.ping.side_effect = RedisConnectionError("refused")
    with patch("chatcore.storage.redis_cache.Redis.from_url", return_value=sync_client):
        store = RedisStore("redis://localhost:6379/0", client=MagicMock())
        with pytest.raises(StoreError):
            store.verify_connection()
    sync_client.close.assert_called_once()

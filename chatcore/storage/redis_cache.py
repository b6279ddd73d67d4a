from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from chatcore.logging import get_logger, sanitize_error_message
from chatcore.storage.errors import StoreError, WrongTypeError

logger = get_logger(__name__)


def _translate(exc: RedisError, command: str) -> StoreError:
    message = sanitize_error_message(str(exc))
    logger.error("redis_command_failed", command=command, error=message)
    if isinstance(exc, ResponseError) and str(exc).startswith("WRONGTYPE"):
        return WrongTypeError(message, {"command": command})
    return StoreError(message, {"command": command})


class RedisStore:
    """Thin Redis wrapper implementing the shared key-value interface.

    Every redis-py failure is re-raised as :class:`StoreError` so callers never
    depend on the client library's exception types.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before wiring services to it."""
        # A short-lived synchronous client keeps the async client off a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        except RedisError as exc:
            raise _translate(exc, "ping") from exc
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise _translate(exc, "ping") from exc

    async def close(self) -> None:
        await self.client.aclose()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise _translate(exc, "get") from exc

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        try:
            result = await self.client.set(key, value, ex=ex, nx=nx)
        except RedisError as exc:
            raise _translate(exc, "set") from exc
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.client.delete(*keys))
        except RedisError as exc:
            raise _translate(exc, "delete") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            raise _translate(exc, "exists") from exc

    async def incr(self, key: str) -> int:
        try:
            return int(await self.client.incr(key))
        except RedisError as exc:
            raise _translate(exc, "incr") from exc

    async def expire(self, key: str, seconds: int) -> bool:
        try:
            return bool(await self.client.expire(key, seconds))
        except RedisError as exc:
            raise _translate(exc, "expire") from exc

    async def ttl(self, key: str) -> int:
        try:
            return int(await self.client.ttl(key))
        except RedisError as exc:
            raise _translate(exc, "ttl") from exc

    async def sadd(self, key: str, *members: str) -> int:
        try:
            return int(await self.client.sadd(key, *members))
        except RedisError as exc:
            raise _translate(exc, "sadd") from exc

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        try:
            return int(await self.client.srem(key, *members))
        except RedisError as exc:
            raise _translate(exc, "srem") from exc

    async def smembers(self, key: str) -> Set[str]:
        try:
            return set(await self.client.smembers(key))
        except RedisError as exc:
            raise _translate(exc, "smembers") from exc

    async def sismember(self, key: str, member: str) -> bool:
        try:
            return bool(await self.client.sismember(key, member))
        except RedisError as exc:
            raise _translate(exc, "sismember") from exc

    async def hset(self, key: str, field: str, value: str) -> int:
        try:
            return int(await self.client.hset(key, field, value))
        except RedisError as exc:
            raise _translate(exc, "hset") from exc

    async def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        try:
            return int(await self.client.hdel(key, *fields))
        except RedisError as exc:
            raise _translate(exc, "hdel") from exc

    async def hgetall(self, key: str) -> Dict[str, str]:
        try:
            return dict(await self.client.hgetall(key))
        except RedisError as exc:
            raise _translate(exc, "hgetall") from exc

    async def publish(self, channel: str, message: str) -> int:
        try:
            return int(await self.client.publish(channel, message))
        except RedisError as exc:
            raise _translate(exc, "publish") from exc

    def pipeline(self) -> "RedisPipeline":
        return RedisPipeline(self.client.pipeline(transaction=False))


class RedisPipeline:
    """Non-transactional pipeline; commands are flushed in one round trip."""

    def __init__(self, pipe: Any) -> None:
        self._pipe = pipe

    def set(self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False):
        self._pipe.set(key, value, ex=ex, nx=nx)
        return self

    def get(self, key: str):
        self._pipe.get(key)
        return self

    def delete(self, *keys: str):
        self._pipe.delete(*keys)
        return self

    def exists(self, key: str):
        self._pipe.exists(key)
        return self

    def expire(self, key: str, seconds: int):
        self._pipe.expire(key, seconds)
        return self

    def ttl(self, key: str):
        self._pipe.ttl(key)
        return self

    def sadd(self, key: str, *members: str):
        self._pipe.sadd(key, *members)
        return self

    def srem(self, key: str, *members: str):
        self._pipe.srem(key, *members)
        return self

    def hset(self, key: str, field: str, value: str):
        self._pipe.hset(key, field, value)
        return self

    def hdel(self, key: str, *fields: str):
        self._pipe.hdel(key, *fields)
        return self

    async def execute(self) -> List[Any]:
        try:
            return list(await self._pipe.execute())
        except RedisError as exc:
            raise _translate(exc, "pipeline") from exc


__all__ = ["RedisStore", "RedisPipeline"]

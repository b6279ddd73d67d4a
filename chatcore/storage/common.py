"""Store interface shared by the Redis and in-memory backends.

Services depend on :class:`KeyValueStore` only, never on a concrete client, so
either backend (or a test double) can be injected.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol, Set


class StorePipeline(Protocol):
    """Batch of commands sent together. Not transactional."""

    def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> "StorePipeline": ...

    def get(self, key: str) -> "StorePipeline": ...

    def delete(self, *keys: str) -> "StorePipeline": ...

    def exists(self, key: str) -> "StorePipeline": ...

    def expire(self, key: str, seconds: int) -> "StorePipeline": ...

    def ttl(self, key: str) -> "StorePipeline": ...

    def sadd(self, key: str, *members: str) -> "StorePipeline": ...

    def srem(self, key: str, *members: str) -> "StorePipeline": ...

    def hset(self, key: str, field: str, value: str) -> "StorePipeline": ...

    def hdel(self, key: str, *fields: str) -> "StorePipeline": ...

    async def execute(self) -> List[Any]: ...


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def sismember(self, key: str, member: str) -> bool: ...

    async def hset(self, key: str, field: str, value: str) -> int: ...

    async def hdel(self, key: str, *fields: str) -> int: ...

    async def hgetall(self, key: str) -> Dict[str, str]: ...

    async def publish(self, channel: str, message: str) -> int: ...

    def pipeline(self) -> StorePipeline: ...

    async def ping(self) -> bool: ...


def dump_json(value: Dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def load_json(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a stored JSON object, treating corrupt records as absent."""
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


__all__ = ["KeyValueStore", "StorePipeline", "dump_json", "load_json"]

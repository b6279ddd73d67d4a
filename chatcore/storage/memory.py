from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from chatcore.logging import get_logger
from chatcore.storage.errors import WrongTypeError

Clock = Callable[[], float]


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float] = None


class MemoryStore:
    """In-process key-value store with Redis-compatible TTL semantics.

    Used for tests and single-node development. Strings, sets and hashes are
    supported; expiry is evaluated lazily against the injected clock so tests
    can move time forward without sleeping.
    """

    def __init__(self, *, clock: Clock = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        # RLock so pipeline execution can call back into the public methods
        self._data_lock = threading.RLock()
        self.published: List[Tuple[str, str]] = []

    # -- internals ---------------------------------------------------------

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _typed(self, key: str, kind: type) -> Optional[_Entry]:
        entry = self._live(key)
        if entry is not None and not isinstance(entry.value, kind):
            raise WrongTypeError(
                "Operation against a key holding the wrong kind of value",
                {"key": key},
            )
        return entry

    def _drop_if_empty(self, key: str, entry: _Entry) -> None:
        if not entry.value:
            self._data.pop(key, None)

    # -- strings -----------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            entry = self._typed(key, str)
            return entry.value if entry else None

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        with self._data_lock:
            if nx and self._live(key) is not None:
                return False
            expires_at = self._clock() + ex if ex else None
            self._data[key] = _Entry(str(value), expires_at)
            return True

    async def delete(self, *keys: str) -> int:
        with self._data_lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            return self._live(key) is not None

    async def incr(self, key: str) -> int:
        with self._data_lock:
            entry = self._typed(key, str)
            if entry is None:
                entry = _Entry("0")
                self._data[key] = entry
            try:
                current = int(entry.value)
            except ValueError as exc:
                raise WrongTypeError("Value is not an integer", {"key": key}) from exc
            entry.value = str(current + 1)
            return current + 1

    async def expire(self, key: str, seconds: int) -> bool:
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                return False
            if seconds <= 0:
                del self._data[key]
                return True
            entry.expires_at = self._clock() + seconds
            return True

    async def ttl(self, key: str) -> int:
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            return max(0, math.ceil(entry.expires_at - self._clock()))

    # -- sets --------------------------------------------------------------

    async def sadd(self, key: str, *members: str) -> int:
        with self._data_lock:
            entry = self._typed(key, set)
            if entry is None:
                entry = _Entry(set())
                self._data[key] = entry
            before = len(entry.value)
            entry.value.update(str(m) for m in members)
            return len(entry.value) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._data_lock:
            entry = self._typed(key, set)
            if entry is None:
                return 0
            before = len(entry.value)
            entry.value.difference_update(str(m) for m in members)
            removed = before - len(entry.value)
            self._drop_if_empty(key, entry)
            return removed

    async def smembers(self, key: str) -> Set[str]:
        with self._data_lock:
            entry = self._typed(key, set)
            return set(entry.value) if entry else set()

    async def sismember(self, key: str, member: str) -> bool:
        with self._data_lock:
            entry = self._typed(key, set)
            return bool(entry) and str(member) in entry.value

    # -- hashes ------------------------------------------------------------

    async def hset(self, key: str, field: str, value: str) -> int:
        with self._data_lock:
            entry = self._typed(key, dict)
            if entry is None:
                entry = _Entry({})
                self._data[key] = entry
            created = 0 if field in entry.value else 1
            entry.value[field] = str(value)
            return created

    async def hdel(self, key: str, *fields: str) -> int:
        with self._data_lock:
            entry = self._typed(key, dict)
            if entry is None:
                return 0
            removed = 0
            for field in fields:
                if entry.value.pop(field, None) is not None:
                    removed += 1
            self._drop_if_empty(key, entry)
            return removed

    async def hgetall(self, key: str) -> Dict[str, str]:
        with self._data_lock:
            entry = self._typed(key, dict)
            return dict(entry.value) if entry else {}

    # -- misc --------------------------------------------------------------

    async def publish(self, channel: str, message: str) -> int:
        with self._data_lock:
            self.published.append((channel, message))
        return 0

    async def ping(self) -> bool:
        return True

    def pipeline(self) -> "MemoryPipeline":
        return MemoryPipeline(self)

    def keys(self, prefix: str = "") -> List[str]:
        """Live keys starting with ``prefix`` (debugging and tests only)."""
        with self._data_lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))


class MemoryPipeline:
    """Queues commands and replays them against a :class:`MemoryStore`."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._commands: List[Tuple[str, tuple, dict]] = []

    def _queue(self, name: str, *args: Any, **kwargs: Any) -> "MemoryPipeline":
        self._commands.append((name, args, kwargs))
        return self

    def set(self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False):
        return self._queue("set", key, value, ex=ex, nx=nx)

    def get(self, key: str):
        return self._queue("get", key)

    def delete(self, *keys: str):
        return self._queue("delete", *keys)

    def exists(self, key: str):
        return self._queue("exists", key)

    def expire(self, key: str, seconds: int):
        return self._queue("expire", key, seconds)

    def ttl(self, key: str):
        return self._queue("ttl", key)

    def sadd(self, key: str, *members: str):
        return self._queue("sadd", key, *members)

    def srem(self, key: str, *members: str):
        return self._queue("srem", key, *members)

    def hset(self, key: str, field: str, value: str):
        return self._queue("hset", key, field, value)

    def hdel(self, key: str, *fields: str):
        return self._queue("hdel", key, *fields)

    async def execute(self) -> List[Any]:
        commands, self._commands = self._commands, []
        results: List[Any] = []
        for name, args, kwargs in commands:
            results.append(await getattr(self._store, name)(*args, **kwargs))
        return results


__all__ = ["MemoryStore", "MemoryPipeline", "Clock"]

from __future__ import annotations

import time
from typing import Callable, Optional

from chatcore.logging import get_logger
from chatcore.service.errors import ConflictError
from chatcore.service.validation import normalize_username
from chatcore.storage.common import KeyValueStore, dump_json, load_json
from chatcore.storage.keys import user_key
from chatcore.storage.models import UserRecord

logger = get_logger(__name__)


class UserDirectory:
    """User records keyed by lowercased username. Never hard-deleted here."""

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def create_user(self, username: str) -> UserRecord:
        username = normalize_username(username)
        now = self._now_ms()
        record = UserRecord(username=username, created_at=now, last_active=now)
        created = await self.store.set(user_key(username), dump_json(record.to_dict()), nx=True)
        if not created:
            raise ConflictError("Username already taken", detail={"username": username})
        logger.info("user_created", username=username)
        return record

    async def get_user(self, username: str) -> Optional[UserRecord]:
        data = load_json(await self.store.get(user_key(normalize_username(username))))
        if not data or "username" not in data:
            return None
        return UserRecord.from_dict(data)

    async def user_exists(self, username: str) -> bool:
        return await self.store.exists(user_key(normalize_username(username)))

    async def touch(self, username: str) -> Optional[UserRecord]:
        record = await self.get_user(username)
        if record is None:
            return None
        record.last_active = self._now_ms()
        await self.store.set(user_key(record.username), dump_json(record.to_dict()))
        return record


__all__ = ["UserDirectory"]

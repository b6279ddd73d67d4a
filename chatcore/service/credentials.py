from __future__ import annotations

from typing import Optional

from chatcore.logging import get_logger
from chatcore.storage.common import KeyValueStore
from chatcore.storage.keys import password_key

logger = get_logger(__name__)


class CredentialStore:
    """One opaque password hash per user, kept apart from session tokens.

    Records carry no TTL and no history: a new hash overwrites the old one.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def set_password_hash(self, username: str, password_hash: str) -> None:
        await self.store.set(password_key(username.lower()), password_hash)
        logger.info("password_hash_set", username=username.lower())

    async def get_password_hash(self, username: str) -> Optional[str]:
        return await self.store.get(password_key(username.lower()))

    async def has_password(self, username: str) -> bool:
        return await self.store.exists(password_key(username.lower()))

    async def delete_password_hash(self, username: str) -> bool:
        removed = await self.store.delete(password_key(username.lower()))
        if removed:
            logger.info("password_hash_deleted", username=username.lower())
        return bool(removed)


__all__ = ["CredentialStore"]

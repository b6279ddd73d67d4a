from __future__ import annotations

import secrets
import time
from typing import Callable, List, Optional

from chatcore.config import Settings
from chatcore.logging import get_logger
from chatcore.service.errors import (
    InvalidTokenError,
    MissingCredentialsError,
    TokenExpiredError,
    ValidationError,
)
from chatcore.service.validation import is_well_formed_token, normalize_username
from chatcore.storage.common import KeyValueStore, dump_json, load_json
from chatcore.storage.keys import last_token_key, token_key, user_tokens_key
from chatcore.storage.models import AuthResult, LastValidToken, TokenInfo

logger = get_logger(__name__)


def mask_token(token: str) -> str:
    return f"...{token[-4:]}" if len(token) > 4 else "..."


class TokenManager:
    """Issues, validates, rotates and revokes opaque session tokens.

    Active tokens live at ``chat:token:{token}`` with a sliding TTL. A per-user
    hash indexes them for listing and bulk revocation. Rotation parks the
    retired token in a single per-user grace slot so a client that still holds
    it across the rotation round trip can finish its in-flight requests.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _generate(self) -> str:
        return secrets.token_hex(self.settings.token_bytes)

    async def _owner(self, token: Optional[str]) -> Optional[str]:
        # Malformed values never reach the store; this also keeps lookups out
        # of the index and grace-slot keys that share the prefix.
        if not is_well_formed_token(token):
            return None
        return await self.store.get(token_key(token))

    async def issue_token(self, username: str) -> str:
        username = normalize_username(username)
        if not username:
            raise MissingCredentialsError("Username is required")
        ttl = self.settings.user_ttl_seconds
        token = self._generate()
        stored = await self.store.set(token_key(token), username, ex=ttl, nx=True)
        if not stored:
            logger.error("token_collision", username=username)
            raise ValidationError("Generated token is not unique")
        index_key = user_tokens_key(username)
        pipe = self.store.pipeline()
        pipe.hset(index_key, token, str(self._now_ms()))
        pipe.expire(index_key, ttl)
        await pipe.execute()
        logger.info("token_issued", username=username, token=token)
        return token

    async def rotate_token(self, username: str, old_token: str) -> str:
        """Retire ``old_token`` into the grace slot and issue a replacement.

        The grace write must land before the old token is deleted; if it fails
        the store error propagates and the old token stays active.
        """
        username = normalize_username(username)
        if not username or not old_token:
            raise MissingCredentialsError("Username and token are required")
        owner = await self._owner(old_token)
        if owner != username:
            raise InvalidTokenError("Token does not belong to this user")

        record = LastValidToken(token=old_token, expired_at=self._now_ms())
        await self.store.set(
            last_token_key(username),
            dump_json(record.to_dict()),
            ex=self.settings.token_grace_period_seconds,
        )
        await self._remove_active(username, old_token)
        new_token = await self.issue_token(username)
        logger.info("token_rotated", username=username, old_token=old_token)
        return new_token

    async def _remove_active(self, username: str, token: str) -> None:
        pipe = self.store.pipeline()
        pipe.delete(token_key(token))
        pipe.hdel(user_tokens_key(username), token)
        await pipe.execute()

    async def _grace_record(self, username: str) -> Optional[LastValidToken]:
        data = load_json(await self.store.get(last_token_key(username)))
        if not data:
            return None
        try:
            return LastValidToken.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("grace_slot_unreadable", username=username)
            return None

    async def validate_auth(
        self, username: Optional[str], token: Optional[str], *, allow_expired: bool = False
    ) -> AuthResult:
        username = normalize_username(username)
        if not username or not token:
            raise MissingCredentialsError("Username and token are required")

        owner = await self._owner(token)
        if owner == username:
            # Sliding expiry; the per-user index slides with it so it never
            # lapses before a token it lists.
            ttl = self.settings.user_ttl_seconds
            pipe = self.store.pipeline()
            pipe.expire(token_key(token), ttl)
            pipe.expire(user_tokens_key(username), ttl)
            await pipe.execute()
            return AuthResult(valid=True, expired=False)

        if allow_expired and await self._within_grace(username, token):
            return AuthResult(valid=True, expired=True)
        return AuthResult(valid=False)

    async def _within_grace(self, username: str, token: str) -> bool:
        if not is_well_formed_token(token):
            return False
        record = await self._grace_record(username)
        if record is None or not secrets.compare_digest(record.token, token):
            return False
        elapsed_ms = self._now_ms() - record.expired_at
        return 0 <= elapsed_ms <= self.settings.token_grace_period_seconds * 1000

    async def require_auth(
        self, username: Optional[str], token: Optional[str], *, allow_expired: bool = False
    ) -> AuthResult:
        """Raising variant of :meth:`validate_auth` for mutating operations."""
        result = await self.validate_auth(username, token, allow_expired=allow_expired)
        if result.valid:
            return result
        name = normalize_username(username)
        record = await self._grace_record(name) if is_well_formed_token(token) else None
        if record is not None and secrets.compare_digest(record.token, token):
            logger.info("token_expired_used", username=name, allow_expired=allow_expired)
            raise TokenExpiredError("Token has expired; refresh required")
        logger.info("token_invalid", username=name)
        raise InvalidTokenError("Invalid authentication token")

    async def delete_token(self, token: str) -> bool:
        owner = await self._owner(token)
        if owner is None:
            return False
        await self._remove_active(owner, token)
        logger.info("token_deleted", username=owner, token=token)
        return True

    async def delete_all_user_tokens(self, username: str) -> int:
        """Revoke every active token for ``username``; the grace slot is left alone."""
        username = normalize_username(username)
        index_key = user_tokens_key(username)
        tokens = list((await self.store.hgetall(index_key)).keys())
        if not tokens:
            return 0
        pipe = self.store.pipeline()
        for token in tokens:
            pipe.delete(token_key(token))
        pipe.delete(index_key)
        results = await pipe.execute()
        revoked = sum(int(bool(r)) for r in results[: len(tokens)])
        logger.info("user_tokens_revoked", username=username, count=revoked)
        return revoked

    async def list_tokens(self, username: str) -> List[TokenInfo]:
        username = normalize_username(username)
        index_key = user_tokens_key(username)
        entries = await self.store.hgetall(index_key)
        if not entries:
            return []
        tokens = list(entries.keys())
        pipe = self.store.pipeline()
        for token in tokens:
            pipe.ttl(token_key(token))
        ttls = await pipe.execute()

        infos: List[TokenInfo] = []
        stale: List[str] = []
        for token, ttl in zip(tokens, ttls):
            ttl = int(ttl)
            if ttl == -2:
                stale.append(token)
                continue
            try:
                created_at: Optional[int] = int(entries[token])
            except (TypeError, ValueError):
                created_at = None
            infos.append(
                TokenInfo(
                    masked=mask_token(token),
                    created_at=created_at,
                    ttl_seconds=ttl if ttl >= 0 else None,
                )
            )
        if stale:
            await self.store.hdel(index_key, *stale)
        infos.sort(key=lambda info: info.created_at or 0, reverse=True)
        return infos


__all__ = ["TokenManager", "mask_token"]

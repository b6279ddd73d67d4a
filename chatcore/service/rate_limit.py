from __future__ import annotations

from typing import Optional

from chatcore.config import RateLimitPolicy
from chatcore.logging import get_logger
from chatcore.service.errors import RateLimitExceeded
from chatcore.storage.common import KeyValueStore
from chatcore.storage.keys import rate_block_key, rate_counter_key
from chatcore.storage.models import RateLimitResult

logger = get_logger(__name__)


class RateLimiter:
    """Fixed-window counters with an optional escalating hard block.

    Counters are only ever reset by TTL expiry. A request over the limit still
    leaves the incremented value in place so sustained abuse keeps counting
    against the same window.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def check_counter_limit(
        self, key: str, window_seconds: int, limit: int
    ) -> RateLimitResult:
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        count = await self.store.incr(key)
        if count == 1:
            await self.store.expire(key, window_seconds)
            reset_seconds = window_seconds
        else:
            reset_seconds = await self.store.ttl(key)
            if reset_seconds == -1:
                # Counter lost its TTL between INCR and EXPIRE.
                await self.store.expire(key, window_seconds)
                reset_seconds = window_seconds
            elif reset_seconds < 0:
                reset_seconds = 0
        allowed = count <= limit
        if not allowed:
            logger.info("rate_limit_exceeded", key=key, count=count, limit=limit)
        return RateLimitResult(
            allowed=allowed, count=count, limit=limit, reset_seconds=reset_seconds
        )

    async def check_and_escalate_block(
        self,
        scope: str,
        identifier_class: str,
        identifier: str,
        *,
        block_ttl_seconds: int,
        window_seconds: int,
        limit: int,
        block_key: Optional[str] = None,
    ) -> RateLimitResult:
        """Counter check that escalates to a long-lived block on first exceedance.

        While the block key exists the counter is not touched at all. The
        counter is also not cleared when the block is set; it simply expires
        with its window.
        """
        block = block_key or rate_block_key(scope, identifier_class, identifier)
        if await self.store.exists(block):
            remaining = await self.store.ttl(block)
            return RateLimitResult(
                allowed=False,
                count=limit + 1,
                limit=limit,
                reset_seconds=max(remaining, 0),
                blocked=True,
            )

        counter = rate_counter_key(scope, identifier_class, identifier)
        result = await self.check_counter_limit(counter, window_seconds, limit)
        if result.allowed:
            return result

        await self.store.set(block, "1", ex=block_ttl_seconds)
        logger.warning(
            "rate_limit_block_set",
            scope=scope,
            identifier_class=identifier_class,
            block_ttl_seconds=block_ttl_seconds,
        )
        return RateLimitResult(
            allowed=False,
            count=result.count,
            limit=limit,
            reset_seconds=block_ttl_seconds,
            blocked=True,
        )

    async def check_policy(self, policy: RateLimitPolicy, identifier: str) -> RateLimitResult:
        if policy.escalates:
            return await self.check_and_escalate_block(
                policy.scope,
                policy.identifier_class,
                identifier,
                block_ttl_seconds=policy.block_ttl_seconds or 0,
                window_seconds=policy.window_seconds,
                limit=policy.limit,
                block_key=rate_block_key(
                    policy.scope, policy.identifier_class, identifier, policy.block_scope
                ),
            )
        key = rate_counter_key(policy.scope, policy.identifier_class, identifier)
        return await self.check_counter_limit(key, policy.window_seconds, policy.limit)

    async def enforce(self, policy: RateLimitPolicy, identifier: str) -> RateLimitResult:
        """Raise ``RateLimitExceeded`` when ``identifier`` is over ``policy``."""
        result = await self.check_policy(policy, identifier)
        if not result.allowed:
            raise RateLimitExceeded(
                "Too many requests. Please try again later.",
                reset_seconds=result.reset_seconds,
                detail={"scope": policy.scope, "blocked": result.blocked},
            )
        return result


__all__ = ["RateLimiter"]

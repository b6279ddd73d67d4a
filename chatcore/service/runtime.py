from __future__ import annotations

import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from chatcore.config import Settings, get_settings
from chatcore.logging import get_logger
from chatcore.service.auth import AuthService
from chatcore.service.broadcast import Broadcaster, StoreBroadcaster
from chatcore.service.credentials import CredentialStore
from chatcore.service.listen import ListenService
from chatcore.service.passwords import PasswordHashing
from chatcore.service.rate_limit import RateLimiter
from chatcore.service.rooms import RoomService
from chatcore.service.tokens import TokenManager
from chatcore.service.users import UserDirectory
from chatcore.storage.common import KeyValueStore
from chatcore.storage.memory import MemoryStore
from chatcore.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings, *, clock: Callable[[], float] = time.time) -> KeyValueStore:
    if settings.use_memory_store:
        logger.info("runtime_store_initialized", store_type="memory")
        return MemoryStore(clock=clock)
    store = RedisStore(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    logger.info(
        "runtime_store_initialized",
        store_type="redis",
        redis_url=_mask_url_password(settings.redis_url),
    )
    return store


class Runtime:
    """Explicitly constructed bundle of the store, broadcaster and services.

    Nothing here is process-global: callers build a ``Runtime`` and pass it
    (or its services) to whatever handles requests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        broadcaster: Optional[Broadcaster] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        self.store = store if store is not None else build_store(self.settings, clock=clock)
        self.broadcaster = broadcaster or StoreBroadcaster(self.store)

        self.hasher = PasswordHashing(self.settings)
        self.credentials = CredentialStore(self.store)
        self.tokens = TokenManager(self.store, self.settings, clock=clock)
        self.limiter = RateLimiter(self.store)
        self.users = UserDirectory(self.store, clock=clock)
        self.auth = AuthService(
            self.settings,
            self.users,
            self.credentials,
            self.tokens,
            self.limiter,
            self.hasher,
        )
        self.rooms = RoomService(
            self.store, self.settings, self.tokens, self.users, self.broadcaster, clock=clock
        )
        self.listen = ListenService(
            self.store, self.settings, self.users, self.broadcaster, clock=clock
        )
        logger.info(
            "runtime_ready",
            store_type=type(self.store).__name__,
            broadcaster=type(self.broadcaster).__name__,
        )


__all__ = ["Runtime", "build_store"]

from __future__ import annotations

import json
from typing import Any, Dict, List, Protocol, Tuple

from chatcore.logging import get_logger, sanitize_error_message
from chatcore.storage.common import KeyValueStore
from chatcore.storage.errors import StoreError

logger = get_logger(__name__)

PUBLIC_ROOMS_CHANNEL = "chats-public"


def user_channel(username: str) -> str:
    return f"chats-{username}"


def listen_channel(session_id: str) -> str:
    return f"listen-{session_id}"


class Broadcaster(Protocol):
    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None: ...


class StoreBroadcaster:
    """Publishes ``{"event", "data"}`` JSON frames over the store's pub/sub."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"event": event, "data": payload}, separators=(",", ":"))
        await self.store.publish(channel, message)


class RecordingBroadcaster:
    """Keeps every published event in memory; handy for local runs and tests."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((channel, event, payload))

    def events_named(self, event: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(channel, payload) for channel, name, payload in self.events if name == event]


async def notify(
    broadcaster: Broadcaster, channel: str, event: str, payload: Dict[str, Any]
) -> bool:
    """Fire-and-forget publish; delivery failures are logged, never raised."""
    try:
        await broadcaster.publish(channel, event, payload)
    except (StoreError, OSError, RuntimeError) as exc:
        logger.warning(
            "broadcast_failed",
            channel=channel,
            broadcast_event=event,
            error=sanitize_error_message(str(exc)),
        )
        return False
    return True


__all__ = [
    "Broadcaster",
    "StoreBroadcaster",
    "RecordingBroadcaster",
    "notify",
    "PUBLIC_ROOMS_CHANNEL",
    "user_channel",
    "listen_channel",
]

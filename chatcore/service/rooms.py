from __future__ import annotations

import secrets
import time
from typing import Callable, Dict, Iterable, List, Optional

from chatcore.config import Settings
from chatcore.logging import get_logger
from chatcore.service.broadcast import (
    PUBLIC_ROOMS_CHANNEL,
    Broadcaster,
    notify,
    user_channel,
)
from chatcore.service.errors import ForbiddenError, NotFoundError, ValidationError
from chatcore.service.tokens import TokenManager
from chatcore.service.users import UserDirectory
from chatcore.service.validation import (
    is_profane,
    normalize_username,
    validate_room_id,
    validate_username,
)
from chatcore.storage.common import KeyValueStore, dump_json, load_json
from chatcore.storage.keys import (
    ROOMS_INDEX,
    presence_key,
    room_key,
    room_presence_index_key,
)
from chatcore.storage.models import Room

logger = get_logger(__name__)

ROOM_TYPES = ("public", "private")
MAX_ROOM_NAME_LENGTH = 64


def public_room_name(name: str) -> str:
    return "-".join(name.strip().lower().split())


def private_room_name(members: Iterable[str]) -> str:
    return ", ".join(f"@{member}" for member in sorted(members))


def generate_room_id() -> str:
    return secrets.token_hex(16)


class RoomService:
    """Room records, TTL presence markers and visibility rules.

    Presence is leaky: a user who vanishes without leaving simply has their
    marker expire. ``userCount`` on the room record is a cache that the
    reconciliation path rebuilds from marker existence.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        tokens: TokenManager,
        users: UserDirectory,
        broadcaster: Broadcaster,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.users = users
        self.broadcaster = broadcaster
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_admin(self, username: str) -> bool:
        return username in self.settings.admin_usernames

    async def _load(self, room_id: str) -> Optional[Room]:
        data = load_json(await self.store.get(room_key(room_id)))
        if not data or "id" not in data:
            return None
        return Room.from_dict(data)

    async def _save(self, room: Room) -> None:
        await self.store.set(room_key(room.id), dump_json(room.to_dict()))

    async def _announce(self, room: Room, event: str, payload: Dict) -> None:
        if room.is_private:
            for member in room.members or []:
                await notify(self.broadcaster, user_channel(member), event, payload)
        else:
            await notify(self.broadcaster, PUBLIC_ROOMS_CHANNEL, event, payload)

    async def get_room(self, room_id: str) -> Room:
        room_id = validate_room_id(room_id)
        room = await self._load(room_id)
        if room is None:
            raise NotFoundError("Room not found", detail={"roomId": room_id})
        return room

    async def create_room(
        self,
        username: str,
        token: str,
        room_type: str,
        *,
        name: Optional[str] = None,
        members: Optional[List[str]] = None,
    ) -> Room:
        await self.tokens.require_auth(username, token)
        creator = normalize_username(username)
        if room_type not in ROOM_TYPES:
            raise ValidationError("Invalid room type", detail={"type": room_type})

        if room_type == "public":
            if not self._is_admin(creator):
                raise ForbiddenError("Only admins can create public rooms")
            if not name or not name.strip():
                raise ValidationError("Room name is required", detail={"field": "name"})
            if is_profane(name, self.settings.extra_blocked_words):
                raise ValidationError(
                    "Room name contains inappropriate language", detail={"field": "name"}
                )
            room_name = public_room_name(name)
            if len(room_name) > MAX_ROOM_NAME_LENGTH:
                raise ValidationError("Room name is too long", detail={"field": "name"})
            room_members = None
        else:
            if not members:
                raise ValidationError(
                    "Private rooms need at least one member", detail={"field": "members"}
                )
            normalized = {validate_username(m) for m in members}
            normalized.add(creator)
            room_members = sorted(normalized)
            room_name = private_room_name(room_members)

        room = Room(
            id=generate_room_id(),
            name=room_name,
            type=room_type,
            created_at=self._now_ms(),
            user_count=0,
            members=room_members,
        )
        await self._save(room)
        await self.store.sadd(ROOMS_INDEX, room.id)
        logger.info("room_created", room_id=room.id, room_type=room_type, creator=creator)
        await self._announce(room, "room-created", {"room": room.to_dict()})
        return room

    async def join_room(self, room_id: str, username: str) -> Room:
        room = await self.get_room(room_id)
        name = normalize_username(username)
        if not name or not await self.users.user_exists(name):
            raise NotFoundError("User not found", detail={"username": name})
        if not room.visible_to(name):
            raise ForbiddenError("Not a member of this room")

        pipe = self.store.pipeline()
        pipe.set(
            presence_key(room.id, name),
            str(self._now_ms()),
            ex=self.settings.room_presence_ttl_seconds,
        )
        pipe.sadd(room_presence_index_key(room.id), name)
        await pipe.execute()

        room.user_count = await self.refresh_room_user_count(room.id)
        logger.info("room_joined", room_id=room.id, username=name, user_count=room.user_count)
        await self._announce(
            room, "room-updated", {"roomId": room.id, "userCount": room.user_count}
        )
        return room

    async def leave_room(self, room_id: str, username: str) -> Optional[Room]:
        """Drop presence; private rooms also lose the member.

        Returns the updated room, or ``None`` when leaving deleted it.
        """
        room = await self.get_room(room_id)
        name = normalize_username(username)
        if room.is_private and name not in (room.members or []):
            raise ForbiddenError("Not a member of this room")

        pipe = self.store.pipeline()
        pipe.delete(presence_key(room.id, name))
        pipe.srem(room_presence_index_key(room.id), name)
        await pipe.execute()

        if room.is_private:
            remaining = [m for m in room.members or [] if m != name]
            if len(remaining) <= 1:
                await self._purge(room)
                logger.info("room_deleted_on_leave", room_id=room.id, username=name)
                await self._announce(room, "room-deleted", {"roomId": room.id})
                return None
            room.members = remaining
            room.name = private_room_name(remaining)
            await self._save(room)

        room.user_count = await self.refresh_room_user_count(room.id)
        logger.info("room_left", room_id=room.id, username=name)
        payload = {"roomId": room.id, "userCount": room.user_count}
        if room.is_private:
            payload["members"] = list(room.members or [])
        await self._announce(room, "room-updated", payload)
        return room

    async def delete_room(self, username: str, token: str, room_id: str) -> None:
        await self.tokens.require_auth(username, token)
        room = await self.get_room(room_id)
        name = normalize_username(username)
        if room.is_private:
            if name not in (room.members or []):
                raise ForbiddenError("Not a member of this room")
        elif not self._is_admin(name):
            raise ForbiddenError("Only admins can delete public rooms")
        await self._purge(room)
        logger.info("room_deleted", room_id=room.id, username=name)
        await self._announce(room, "room-deleted", {"roomId": room.id})

    async def _purge(self, room: Room) -> None:
        index = room_presence_index_key(room.id)
        present = await self.store.smembers(index)
        pipe = self.store.pipeline()
        for member in present:
            pipe.delete(presence_key(room.id, member))
        pipe.delete(index)
        pipe.delete(room_key(room.id))
        pipe.srem(ROOMS_INDEX, room.id)
        await pipe.execute()

    async def list_visible_rooms(self, username: Optional[str]) -> List[Room]:
        """Public rooms plus private rooms listing ``username``. Never writes."""
        name = normalize_username(username)
        room_ids = sorted(await self.store.smembers(ROOMS_INDEX))
        if not room_ids:
            return []
        pipe = self.store.pipeline()
        for room_id in room_ids:
            pipe.get(room_key(room_id))
        raw_rooms = await pipe.execute()

        rooms: List[Room] = []
        for raw in raw_rooms:
            data = load_json(raw)
            if not data or "id" not in data:
                continue
            room = Room.from_dict(data)
            if room.visible_to(name):
                rooms.append(room)
        rooms.sort(key=lambda r: (r.type != "public", r.created_at))
        return rooms

    async def refresh_room_user_count(self, room_id: str) -> int:
        """Recount live presence markers and write the total back to the room."""
        room = await self.get_room(room_id)
        index = room_presence_index_key(room.id)
        candidates = sorted(await self.store.smembers(index))
        live: List[str] = []
        if candidates:
            pipe = self.store.pipeline()
            for member in candidates:
                pipe.exists(presence_key(room.id, member))
            results = await pipe.execute()
            live = [m for m, present in zip(candidates, results) if present]
            stale = [m for m, present in zip(candidates, results) if not present]
            if stale:
                await self.store.srem(index, *stale)
                logger.info("room_presence_expired", room_id=room.id, count=len(stale))

        # Re-read so a concurrent member change is not overwritten; only the
        # count is ours to write.
        current = await self._load(room.id)
        if current is None:
            return len(live)
        current.user_count = len(live)
        await self._save(current)
        return len(live)

    async def cleanup_expired_presence(self) -> Dict[str, int]:
        """Reconcile every registered room; drops ids whose record vanished."""
        counts: Dict[str, int] = {}
        missing: List[str] = []
        for room_id in sorted(await self.store.smembers(ROOMS_INDEX)):
            if await self._load(room_id) is None:
                missing.append(room_id)
                continue
            counts[room_id] = await self.refresh_room_user_count(room_id)
        if missing:
            await self.store.srem(ROOMS_INDEX, *missing)
            logger.info("room_index_pruned", count=len(missing))
        return counts


__all__ = ["RoomService", "public_room_name", "private_room_name", "generate_room_id"]

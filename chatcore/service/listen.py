from __future__ import annotations

import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from chatcore.config import Settings
from chatcore.logging import get_logger
from chatcore.service.broadcast import Broadcaster, listen_channel, notify
from chatcore.service.errors import ForbiddenError, NotFoundError, ValidationError
from chatcore.service.users import UserDirectory
from chatcore.service.validation import normalize_username, validate_session_id
from chatcore.storage.common import KeyValueStore, dump_json, load_json
from chatcore.storage.keys import LISTEN_SESSIONS_INDEX, listen_session_key
from chatcore.storage.models import ListenSession, ListenUser

logger = get_logger(__name__)


@dataclass
class SyncState:
    is_playing: bool
    position_ms: int
    current_track_id: Optional[str] = None
    current_track_meta: Optional[Dict[str, Any]] = None
    dj_username: Optional[str] = None


def generate_session_id() -> str:
    return secrets.token_hex(12)


class ListenService:
    """Short-lived shared-playback sessions.

    A session lives ``listen_session_ttl_seconds`` from its last write. Reading
    never extends it; :meth:`touch_session` and every mutation do. There is no
    closing state: ending a session deletes it and emits ``session-ended``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        users: UserDirectory,
        broadcaster: Broadcaster,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.users = users
        self.broadcaster = broadcaster
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _save(self, session: ListenSession) -> None:
        await self.store.set(
            listen_session_key(session.id),
            dump_json(session.to_dict()),
            ex=self.settings.listen_session_ttl_seconds,
        )

    async def _require(self, session_id: str) -> ListenSession:
        session = await self.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found", detail={"sessionId": session_id})
        return session

    async def _delete(self, session: ListenSession) -> None:
        pipe = self.store.pipeline()
        pipe.delete(listen_session_key(session.id))
        pipe.srem(LISTEN_SESSIONS_INDEX, session.id)
        await pipe.execute()

    async def _publish(self, session_id: str, event: str, payload: Dict[str, Any]) -> None:
        await notify(self.broadcaster, listen_channel(session_id), event, payload)

    async def create_session(self, host_username: str) -> ListenSession:
        host = normalize_username(host_username)
        if not host or not await self.users.user_exists(host):
            raise NotFoundError("User not found", detail={"username": host})
        now = self._now_ms()
        session = ListenSession(
            id=generate_session_id(),
            host_username=host,
            dj_username=host,
            created_at=now,
            last_sync_at=now,
            users=[ListenUser(username=host, joined_at=now)],
        )
        await self._save(session)
        await self.store.sadd(LISTEN_SESSIONS_INDEX, session.id)
        logger.info("listen_session_created", session_id=session.id, host=host)
        await self._publish(session.id, "user-joined", {"username": host})
        return session

    async def get_session(self, session_id: str) -> Optional[ListenSession]:
        session_id = validate_session_id(session_id)
        data = load_json(await self.store.get(listen_session_key(session_id)))
        if not data:
            return None
        try:
            return ListenSession.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("listen_session_unreadable", session_id=session_id)
            return None

    async def touch_session(self, session_id: str) -> bool:
        session_id = validate_session_id(session_id)
        touched = await self.store.expire(
            listen_session_key(session_id), self.settings.listen_session_ttl_seconds
        )
        if not touched:
            raise NotFoundError("Session not found", detail={"sessionId": session_id})
        return True

    async def join_session(self, session_id: str, username: str) -> ListenSession:
        session = await self._require(session_id)
        name = normalize_username(username)
        if not name or not await self.users.user_exists(name):
            raise NotFoundError("User not found", detail={"username": name})

        now = self._now_ms()
        announce = not session.has_member(name)
        if announce:
            if len(session.users) >= self.settings.listen_session_max_users:
                raise ForbiddenError(
                    "Session is full",
                    detail={"maxUsers": self.settings.listen_session_max_users},
                )
            session.users.append(ListenUser(username=name, joined_at=now))

        session.last_sync_at = now
        session.users.sort(key=lambda user: user.joined_at)
        await self._save(session)
        if announce:
            logger.info("listen_session_joined", session_id=session.id, username=name)
            await self._publish(session.id, "user-joined", {"username": name})
        return session

    async def leave_session(self, session_id: str, username: str) -> Optional[ListenSession]:
        """Remove ``username``; returns ``None`` when the host left and the session ended."""
        session = await self._require(session_id)
        name = normalize_username(username)
        if not session.has_member(name):
            raise ForbiddenError("User not in session")

        if name == session.host_username:
            await self._end(session, reason="host-left")
            return None

        session.users = [user for user in session.users if user.username != name]
        previous_dj = session.dj_username
        if previous_dj == name and session.users:
            session.dj_username = min(session.users, key=lambda u: u.joined_at).username
        session.last_sync_at = self._now_ms()
        await self._save(session)

        logger.info("listen_session_left", session_id=session.id, username=name)
        await self._publish(session.id, "user-left", {"username": name})
        if session.dj_username != previous_dj:
            await self._publish(
                session.id,
                "dj-changed",
                {"previousDj": previous_dj, "newDj": session.dj_username},
            )
        return session

    async def sync_session(
        self, session_id: str, username: str, state: SyncState
    ) -> ListenSession:
        session = await self._require(session_id)
        name = normalize_username(username)
        if not session.has_member(name):
            raise ForbiddenError("User not in session")
        if session.dj_username != name:
            raise ForbiddenError("Only the DJ can sync playback")

        now = self._now_ms()
        session.current_track_id = state.current_track_id
        session.current_track_meta = state.current_track_meta
        session.is_playing = bool(state.is_playing)
        session.position_ms = max(0, int(state.position_ms))
        session.last_sync_at = now

        previous_dj = session.dj_username
        next_dj = normalize_username(state.dj_username)
        if next_dj and next_dj != previous_dj:
            if not session.has_member(next_dj):
                raise ValidationError(
                    "DJ must be an active session member", detail={"djUsername": next_dj}
                )
            session.dj_username = next_dj

        await self._save(session)
        if session.dj_username != previous_dj:
            logger.info(
                "listen_dj_changed", session_id=session.id, previous=previous_dj, new=next_dj
            )
            await self._publish(
                session.id, "dj-changed", {"previousDj": previous_dj, "newDj": next_dj}
            )
        await self._publish(
            session.id,
            "sync",
            {
                "currentTrackId": session.current_track_id,
                "currentTrackMeta": session.current_track_meta,
                "isPlaying": session.is_playing,
                "positionMs": session.position_ms,
                "timestamp": now,
                "djUsername": session.dj_username,
                "listenerCount": session.listener_count,
            },
        )
        return session

    async def post_reaction(self, session_id: str, username: str, emoji: str) -> Dict[str, Any]:
        """Relay a reaction; only ``lastSyncAt`` is persisted, never the reaction."""
        emoji = (emoji or "").strip()
        max_length = self.settings.listen_reaction_max_length
        if not emoji or len(emoji) > max_length:
            raise ValidationError(
                f"Emoji must be 1-{max_length} characters", detail={"field": "emoji"}
            )
        session = await self._require(session_id)
        name = normalize_username(username)
        if not session.has_member(name):
            raise ForbiddenError("User not in session")

        now = self._now_ms()
        session.last_sync_at = now
        await self._save(session)
        reaction = {
            "id": str(uuid.uuid4()),
            "username": name,
            "emoji": emoji,
            "timestamp": now,
        }
        await self._publish(session.id, "reaction", reaction)
        return reaction

    async def end_session(self, session_id: str, username: str) -> None:
        session = await self._require(session_id)
        if normalize_username(username) != session.host_username:
            raise ForbiddenError("Only the host can end the session")
        await self._end(session, reason="ended")

    async def _end(self, session: ListenSession, *, reason: str) -> None:
        await self._delete(session)
        logger.info("listen_session_ended", session_id=session.id, reason=reason)
        await self._publish(session.id, "session-ended", {"sessionId": session.id, "reason": reason})

    async def list_sessions(self) -> List[ListenSession]:
        """Live sessions, busiest first then newest; idle ones are skipped."""
        ids = sorted(await self.store.smembers(LISTEN_SESSIONS_INDEX))
        if not ids:
            return []
        pipe = self.store.pipeline()
        for session_id in ids:
            pipe.get(listen_session_key(session_id))
        raw_sessions = await pipe.execute()

        now = self._now_ms()
        stale_ms = self.settings.listen_session_stale_seconds * 1000
        sessions: List[ListenSession] = []
        vanished: List[str] = []
        for session_id, raw in zip(ids, raw_sessions):
            data = load_json(raw)
            if not data:
                vanished.append(session_id)
                continue
            try:
                session = ListenSession.from_dict(data)
            except (KeyError, TypeError, ValueError):
                logger.warning("listen_session_unreadable", session_id=session_id)
                continue
            if now - session.last_sync_at > stale_ms:
                continue
            sessions.append(session)
        if vanished:
            await self.store.srem(LISTEN_SESSIONS_INDEX, *vanished)
        sessions.sort(key=lambda s: (s.listener_count, s.created_at), reverse=True)
        return sessions


__all__ = ["ListenService", "SyncState", "generate_session_id"]

"""Library surface for thin request handlers.

Each method takes already-decoded request pieces (JSON body dicts, path ids,
caller identity) and returns an :class:`Envelope`; nothing raises past this
layer. Transport concerns such as routing and CORS stay with the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import TypeAdapter

from chatcore.api.error_handling import guarded
from chatcore.api.schemas import (
    CreateRoomRequest,
    Credentials,
    Envelope,
    LoginRequest,
    PasswordSetRequest,
    PrivateRoomRequest,
    ReactionRequest,
    RefreshRequest,
    RegisterRequest,
    SyncRequest,
    meta_dict,
)
from chatcore.logging import set_correlation_id
from chatcore.service.errors import ForbiddenError, NotFoundError
from chatcore.service.listen import SyncState
from chatcore.service.runtime import Runtime
from chatcore.service.validation import normalize_username

_ROOM_REQUEST = TypeAdapter(CreateRoomRequest)


class CoreHandlers:
    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime

    async def _authenticate(self, credentials: Optional[Dict[str, Any]]) -> Credentials:
        creds = Credentials.model_validate(credentials or {})
        await self.runtime.tokens.require_auth(creds.username, creds.token)
        creds.username = normalize_username(creds.username)
        return creds

    # -- auth ----------------------------------------------------------------

    async def register(self, body: Dict[str, Any], *, ip: Optional[str] = None) -> Envelope:
        set_correlation_id()

        async def _run():
            request = RegisterRequest.model_validate(body or {})
            outcome = await self.runtime.auth.register(request.username, request.password, ip=ip)
            return {"user": outcome.user.to_dict(), "token": outcome.token}

        return await guarded("register", _run, success_status=201)

    async def login(self, body: Dict[str, Any], *, ip: Optional[str] = None) -> Envelope:
        set_correlation_id()

        async def _run():
            request = LoginRequest.model_validate(body or {})
            outcome = await self.runtime.auth.login(
                request.username, request.password, old_token=request.old_token, ip=ip
            )
            return {"user": outcome.user.to_dict(), "token": outcome.token}

        return await guarded("login", _run)

    async def refresh(self, body: Dict[str, Any], *, ip: Optional[str] = None) -> Envelope:
        set_correlation_id()

        async def _run():
            request = RefreshRequest.model_validate(body or {})
            outcome = await self.runtime.auth.refresh(request.username, request.token, ip=ip)
            return {"token": outcome.token, "wasExpired": outcome.was_expired}

        return await guarded("refresh", _run)

    async def verify(
        self, credentials: Dict[str, Any], *, allow_expired: bool = False
    ) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            result = await self.runtime.tokens.validate_auth(
                creds.username, creds.token, allow_expired=allow_expired
            )
            return {"valid": result.valid, "expired": result.expired}

        return await guarded("verify", _run)

    async def logout(self, credentials: Dict[str, Any]) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            await self.runtime.auth.logout(creds.username, creds.token)
            return {"success": True}

        return await guarded("logout", _run)

    async def logout_all(self, credentials: Dict[str, Any]) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            revoked = await self.runtime.auth.logout_all(creds.username, creds.token)
            return {"success": True, "revoked": revoked}

        return await guarded("logout_all", _run)

    async def list_tokens(self, credentials: Dict[str, Any]) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            tokens = await self.runtime.auth.list_tokens(creds.username, creds.token)
            return {"tokens": [info.to_dict() for info in tokens], "count": len(tokens)}

        return await guarded("list_tokens", _run)

    async def set_password(self, credentials: Dict[str, Any], body: Dict[str, Any]) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            request = PasswordSetRequest.model_validate(body or {})
            await self.runtime.auth.set_password(creds.username, creds.token, request.password)
            return {"success": True}

        return await guarded("set_password", _run)

    async def check_password(self, credentials: Dict[str, Any]) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            has_password = await self.runtime.auth.has_password(creds.username, creds.token)
            return {"hasPassword": has_password}

        return await guarded("check_password", _run)

    # -- rooms ---------------------------------------------------------------

    async def list_rooms(self, username: Optional[str] = None) -> Envelope:
        async def _run():
            rooms = await self.runtime.rooms.list_visible_rooms(username)
            return {"rooms": [room.to_dict() for room in rooms]}

        return await guarded("list_rooms", _run)

    async def get_room(self, room_id: str, username: Optional[str] = None) -> Envelope:
        async def _run():
            room = await self.runtime.rooms.get_room(room_id)
            if not room.visible_to(normalize_username(username)):
                raise ForbiddenError("Not a member of this room")
            return {"room": room.to_dict()}

        return await guarded("get_room", _run)

    async def create_room(self, credentials: Dict[str, Any], body: Dict[str, Any]) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            request = _ROOM_REQUEST.validate_python(body or {})
            members = request.members if isinstance(request, PrivateRoomRequest) else None
            name = getattr(request, "name", None)
            room = await self.runtime.rooms.create_room(
                creds.username, creds.token, request.type, name=name, members=members
            )
            return {"room": room.to_dict()}

        return await guarded("create_room", _run, success_status=201)

    async def join_room(self, credentials: Dict[str, Any], room_id: str) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            room = await self.runtime.rooms.join_room(room_id, creds.username)
            return {"room": room.to_dict()}

        return await guarded("join_room", _run)

    async def leave_room(self, credentials: Dict[str, Any], room_id: str) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            room = await self.runtime.rooms.leave_room(room_id, creds.username)
            return {"room": room.to_dict() if room else None, "deleted": room is None}

        return await guarded("leave_room", _run)

    async def delete_room(self, credentials: Dict[str, Any], room_id: str) -> Envelope:
        async def _run():
            creds = Credentials.model_validate(credentials or {})
            await self.runtime.rooms.delete_room(creds.username, creds.token, room_id)
            return {"success": True}

        return await guarded("delete_room", _run)

    # -- listen-together -----------------------------------------------------

    async def list_listen_sessions(self) -> Envelope:
        async def _run():
            sessions = await self.runtime.listen.list_sessions()
            return {"sessions": [session.summary() for session in sessions]}

        return await guarded("list_listen_sessions", _run)

    async def get_listen_session(self, session_id: str, *, touch: bool = False) -> Envelope:
        async def _run():
            session = await self.runtime.listen.get_session(session_id)
            if session is None:
                raise NotFoundError("Session not found", detail={"sessionId": session_id})
            if touch:
                await self.runtime.listen.touch_session(session_id)
            return {"session": session.to_dict()}

        return await guarded("get_listen_session", _run)

    async def create_listen_session(self, credentials: Dict[str, Any]) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            session = await self.runtime.listen.create_session(creds.username)
            return {"session": session.to_dict()}

        return await guarded("create_listen_session", _run, success_status=201)

    async def join_listen_session(self, credentials: Dict[str, Any], session_id: str) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            session = await self.runtime.listen.join_session(session_id, creds.username)
            return {"session": session.to_dict()}

        return await guarded("join_listen_session", _run)

    async def leave_listen_session(self, credentials: Dict[str, Any], session_id: str) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            session = await self.runtime.listen.leave_session(session_id, creds.username)
            return {"session": session.to_dict() if session else None, "ended": session is None}

        return await guarded("leave_listen_session", _run)

    async def sync_listen_session(
        self, credentials: Dict[str, Any], session_id: str, body: Dict[str, Any]
    ) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            request = SyncRequest.model_validate(body or {})
            state = SyncState(
                is_playing=request.is_playing,
                position_ms=request.position_ms,
                current_track_id=request.current_track_id,
                current_track_meta=meta_dict(request.current_track_meta),
                dj_username=request.dj_username,
            )
            await self.runtime.listen.sync_session(session_id, creds.username, state)
            return {"success": True}

        return await guarded("sync_listen_session", _run)

    async def react(
        self, credentials: Dict[str, Any], session_id: str, body: Dict[str, Any]
    ) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            request = ReactionRequest.model_validate(body or {})
            reaction = await self.runtime.listen.post_reaction(
                session_id, creds.username, request.emoji
            )
            return {"success": True, "reaction": reaction}

        return await guarded("react", _run)

    async def end_listen_session(self, credentials: Dict[str, Any], session_id: str) -> Envelope:
        async def _run():
            creds = await self._authenticate(credentials)
            await self.runtime.listen.end_session(session_id, creds.username)
            return {"success": True}

        return await guarded("end_listen_session", _run)


__all__ = ["CoreHandlers"]

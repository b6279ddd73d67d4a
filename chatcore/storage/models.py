from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Timestamps are integer milliseconds since the epoch, matching the records
# already stored by other services that read these keys.


@dataclass
class UserRecord:
    username: str
    created_at: int
    last_active: int
    banned: bool = False
    ban_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "username": self.username,
            "createdAt": self.created_at,
            "lastActive": self.last_active,
        }
        if self.banned:
            data["banned"] = True
            if self.ban_reason:
                data["banReason"] = self.ban_reason
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        created = int(data.get("createdAt") or 0)
        return cls(
            username=str(data["username"]),
            created_at=created,
            last_active=int(data.get("lastActive") or created),
            banned=bool(data.get("banned", False)),
            ban_reason=data.get("banReason"),
        )


@dataclass
class AuthResult:
    valid: bool
    expired: bool = False


@dataclass
class TokenInfo:
    """Display-safe view of an active token; never carries the full value."""

    masked: str
    created_at: Optional[int]
    ttl_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maskedToken": self.masked,
            "createdAt": self.created_at,
            "ttlSeconds": self.ttl_seconds,
        }


@dataclass
class LastValidToken:
    token: str
    expired_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token, "expiredAt": self.expired_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastValidToken":
        return cls(token=str(data["token"]), expired_at=int(data["expiredAt"]))


@dataclass
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    reset_seconds: int
    blocked: bool = False


@dataclass
class Room:
    id: str
    name: str
    type: str
    created_at: int
    user_count: int = 0
    members: Optional[List[str]] = None

    @property
    def is_private(self) -> bool:
        return self.type == "private"

    def visible_to(self, username: Optional[str]) -> bool:
        if not self.is_private:
            return True
        if not username:
            return False
        return username.lower() in (self.members or [])

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "createdAt": self.created_at,
            "userCount": self.user_count,
        }
        if self.members is not None:
            data["members"] = list(self.members)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Room":
        members = data.get("members")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            type=str(data.get("type", "public")),
            created_at=int(data.get("createdAt") or 0),
            user_count=int(data.get("userCount") or 0),
            members=[str(m).lower() for m in members] if members is not None else None,
        )


@dataclass
class ListenUser:
    username: str
    joined_at: int
    is_online: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "joinedAt": self.joined_at,
            "isOnline": self.is_online,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ListenUser":
        return cls(
            username=str(data["username"]),
            joined_at=int(data.get("joinedAt") or 0),
            is_online=bool(data.get("isOnline", True)),
        )


@dataclass
class ListenSession:
    id: str
    host_username: str
    dj_username: str
    created_at: int
    last_sync_at: int
    users: List[ListenUser] = field(default_factory=list)
    current_track_id: Optional[str] = None
    current_track_meta: Optional[Dict[str, Any]] = None
    is_playing: bool = False
    position_ms: int = 0

    def member_names(self) -> List[str]:
        return [user.username for user in self.users]

    def has_member(self, username: str) -> bool:
        return username in self.member_names()

    @property
    def listener_count(self) -> int:
        return len(self.users)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hostUsername": self.host_username,
            "djUsername": self.dj_username,
            "createdAt": self.created_at,
            "currentTrackMeta": self.current_track_meta,
            "isPlaying": self.is_playing,
            "listenerCount": self.listener_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hostUsername": self.host_username,
            "djUsername": self.dj_username,
            "createdAt": self.created_at,
            "lastSyncAt": self.last_sync_at,
            "users": [user.to_dict() for user in self.users],
            "currentTrackId": self.current_track_id,
            "currentTrackMeta": self.current_track_meta,
            "isPlaying": self.is_playing,
            "positionMs": self.position_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ListenSession":
        return cls(
            id=str(data["id"]),
            host_username=str(data["hostUsername"]),
            dj_username=str(data.get("djUsername") or data["hostUsername"]),
            created_at=int(data.get("createdAt") or 0),
            last_sync_at=int(data.get("lastSyncAt") or 0),
            users=[ListenUser.from_dict(u) for u in data.get("users") or []],
            current_track_id=data.get("currentTrackId"),
            current_track_meta=data.get("currentTrackMeta"),
            is_playing=bool(data.get("isPlaying", False)),
            position_ms=int(data.get("positionMs") or 0),
        )

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "missing_credentials",
    "invalid_token",
    "token_expired",
    "invalid_credentials",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error payload with a stable, machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Transport-neutral result returned by every core handler."""

    status: str = Field(..., pattern="^(ok|error)$")
    status_code: int = 200
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Credentials(_CamelModel):
    username: Optional[str] = Field(default=None, max_length=64)
    token: Optional[str] = Field(default=None, max_length=512)


class RegisterRequest(_CamelModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=1024)


class LoginRequest(_CamelModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=1024)
    old_token: Optional[str] = Field(default=None, alias="oldToken", max_length=512)


class RefreshRequest(_CamelModel):
    username: str = Field(..., max_length=64)
    token: str = Field(..., max_length=512)


class PasswordSetRequest(_CamelModel):
    password: str = Field(..., max_length=1024)


class PublicRoomRequest(_CamelModel):
    type: Literal["public"]
    name: str = Field(..., min_length=1, max_length=128)


class PrivateRoomRequest(_CamelModel):
    type: Literal["private"]
    members: List[str] = Field(..., min_length=1, max_length=50)

    @field_validator("members")
    @classmethod
    def _normalize_members(cls, value: List[str]) -> List[str]:
        return [member.strip().lower() for member in value if member and member.strip()]


CreateRoomRequest = Annotated[
    Union[PublicRoomRequest, PrivateRoomRequest], Field(discriminator="type")
]


class TrackMeta(_CamelModel):
    title: str = Field(..., max_length=512)
    artist: Optional[str] = Field(default=None, max_length=512)
    cover: Optional[str] = Field(default=None, max_length=2048)


class SyncRequest(_CamelModel):
    is_playing: bool = Field(..., alias="isPlaying")
    position_ms: int = Field(..., alias="positionMs")
    current_track_id: Optional[str] = Field(default=None, alias="currentTrackId", max_length=256)
    current_track_meta: Optional[TrackMeta] = Field(default=None, alias="currentTrackMeta")
    dj_username: Optional[str] = Field(default=None, alias="djUsername", max_length=64)


class ReactionRequest(_CamelModel):
    emoji: str = Field(..., max_length=64)


def meta_dict(meta: Optional[TrackMeta]) -> Optional[Dict[str, Any]]:
    if meta is None:
        return None
    return meta.model_dump(exclude_none=True)


__all__ = [
    "ErrorBody",
    "Envelope",
    "Credentials",
    "RegisterRequest",
    "LoginRequest",
    "RefreshRequest",
    "PasswordSetRequest",
    "PublicRoomRequest",
    "PrivateRoomRequest",
    "CreateRoomRequest",
    "TrackMeta",
    "SyncRequest",
    "ReactionRequest",
    "meta_dict",
]

"""Key namespace shared with existing stored data.

The shapes below are read by other deployments, so they must not change.
"""

from __future__ import annotations

from typing import Optional

PASSWORD_PREFIX = "chat:password:"
TOKEN_PREFIX = "chat:token:"
TOKEN_USER_PREFIX = "chat:token:user:"
TOKEN_LAST_PREFIX = "chat:token:last:"
USER_PREFIX = "chat:users:"
RATE_PREFIX = "rl:"
RATE_BLOCK_PREFIX = "rl:block:"
ROOM_PREFIX = "room:"
ROOMS_INDEX = "rooms:all"
PRESENCE_PREFIX = "presence:"
LISTEN_SESSION_PREFIX = "listen:session:"
LISTEN_SESSIONS_INDEX = "listen:sessions"


def password_key(username: str) -> str:
    return f"{PASSWORD_PREFIX}{username}"


def token_key(token: str) -> str:
    return f"{TOKEN_PREFIX}{token}"


def user_tokens_key(username: str) -> str:
    return f"{TOKEN_USER_PREFIX}{username}"


def last_token_key(username: str) -> str:
    return f"{TOKEN_LAST_PREFIX}{username}"


def user_key(username: str) -> str:
    return f"{USER_PREFIX}{username}"


def _identifier(value: str) -> str:
    # Written verbatim; existing counters and blocks are keyed on the raw value.
    return str(value)


def rate_counter_key(scope: str, identifier_class: str, identifier: str) -> str:
    return f"{RATE_PREFIX}{scope}:{identifier_class}:{_identifier(identifier)}"


def rate_block_key(
    scope: str, identifier_class: str, identifier: str, block_scope: Optional[str] = None
) -> str:
    return f"{RATE_BLOCK_PREFIX}{block_scope or scope}:{identifier_class}:{_identifier(identifier)}"


def room_key(room_id: str) -> str:
    return f"{ROOM_PREFIX}{room_id}"


def room_presence_index_key(room_id: str) -> str:
    return f"{ROOM_PREFIX}{room_id}:present"


def presence_key(room_id: str, username: str) -> str:
    return f"{PRESENCE_PREFIX}{room_id}:{username}"


def listen_session_key(session_id: str) -> str:
    return f"{LISTEN_SESSION_PREFIX}{session_id}"


__all__ = [
    "password_key",
    "token_key",
    "user_tokens_key",
    "last_token_key",
    "user_key",
    "rate_counter_key",
    "rate_block_key",
    "room_key",
    "room_presence_index_key",
    "presence_key",
    "listen_session_key",
    "ROOMS_INDEX",
    "LISTEN_SESSIONS_INDEX",
]

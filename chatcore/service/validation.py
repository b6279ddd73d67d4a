from __future__ import annotations

import re
from typing import Iterable, Optional

from chatcore.service.errors import ValidationError

MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 30

# Starts with a letter; single '-' or '_' only between alphanumerics.
USERNAME_REGEX = re.compile(r"^[a-z](?:[a-z0-9]|[-_](?=[a-z0-9])){2,29}$", re.IGNORECASE)
ROOM_ID_REGEX = re.compile(r"^[a-z0-9]+$", re.IGNORECASE)
TOKEN_REGEX = re.compile(r"^[0-9a-f]{16,256}$")
SESSION_ID_REGEX = re.compile(r"^[a-z0-9]{6,64}$", re.IGNORECASE)

_BLOCKED_WORDS = frozenset(
    {
        "asshole",
        "bastard",
        "bitch",
        "chink",
        "cunt",
        "dickhead",
        "fag",
        "faggot",
        "fuck",
        "motherfucker",
        "nigga",
        "nigger",
        "retard",
        "shit",
        "slut",
        "whore",
    }
)

_SEPARATORS = re.compile(r"[\s_\-.]+")
_LEET = str.maketrans({"$": "s", "@": "a", "0": "o", "1": "i", "!": "i", "3": "e", "4": "a", "5": "s", "7": "t"})


def _normalize_for_profanity(text: str) -> str:
    return _SEPARATORS.sub("", text.lower()).translate(_LEET)


def is_profane(text: Optional[str], extra_words: Iterable[str] = ()) -> bool:
    """Substring-aware profanity check that sees through separators and leetspeak."""
    if not text:
        return False
    normalized = _normalize_for_profanity(text)
    words = _BLOCKED_WORDS.union(w.lower() for w in extra_words if w)
    for term in words:
        if len(term) >= 3 and term in normalized:
            return True
    return False


def normalize_username(username: Optional[str]) -> str:
    return (username or "").strip().lower()


def validate_username(username: Optional[str], *, extra_blocked: Iterable[str] = ()) -> str:
    """Return the canonical lowercased username or raise ``ValidationError``."""
    name = normalize_username(username)
    if not name:
        raise ValidationError("Username is required", detail={"field": "username"})
    if len(name) < MIN_USERNAME_LENGTH or len(name) > MAX_USERNAME_LENGTH:
        raise ValidationError(
            f"Username must be {MIN_USERNAME_LENGTH}-{MAX_USERNAME_LENGTH} characters",
            detail={"field": "username"},
        )
    if not USERNAME_REGEX.match(name):
        raise ValidationError(
            "Username must start with a letter and use only letters, numbers, "
            "and single '-' or '_' between them",
            detail={"field": "username"},
        )
    if is_profane(name, extra_blocked):
        raise ValidationError("Username contains inappropriate language", detail={"field": "username"})
    return name


def validate_password(password: Optional[str], *, min_length: int, max_length: int) -> str:
    if not password:
        raise ValidationError("Password is required", detail={"field": "password"})
    if len(password) < min_length:
        raise ValidationError(
            f"Password must be at least {min_length} characters",
            detail={"field": "password"},
        )
    if len(password) > max_length:
        raise ValidationError(
            f"Password must be at most {max_length} characters",
            detail={"field": "password"},
        )
    return password


def validate_room_id(room_id: Optional[str]) -> str:
    value = (room_id or "").strip().lower()
    if not value or not ROOM_ID_REGEX.match(value):
        raise ValidationError("Invalid room id", detail={"field": "roomId"})
    return value


def validate_session_id(session_id: Optional[str]) -> str:
    value = (session_id or "").strip().lower()
    if not value or not SESSION_ID_REGEX.match(value):
        raise ValidationError("Invalid session id", detail={"field": "sessionId"})
    return value


def is_well_formed_token(token: Optional[str]) -> bool:
    return bool(token) and bool(TOKEN_REGEX.match(token))


__all__ = [
    "USERNAME_REGEX",
    "ROOM_ID_REGEX",
    "is_profane",
    "normalize_username",
    "validate_username",
    "validate_password",
    "validate_room_id",
    "validate_session_id",
    "is_well_formed_token",
]

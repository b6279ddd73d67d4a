from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatcore.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """One row of the abuse-guard policy table.

    ``block_ttl_seconds`` of ``None`` means the policy only enforces the burst
    window and never escalates to a hard block.
    """

    scope: str
    identifier_class: str
    window_seconds: int
    limit: int
    block_ttl_seconds: Optional[int] = None
    block_scope: Optional[str] = None

    @property
    def escalates(self) -> bool:
        return bool(self.block_ttl_seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _parse_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip().lower() for item in value.split(",") if item.strip()]
    return [str(item).strip().lower() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the identity and shared-state core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep all state in process memory (tests and single-node dev only)",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Tokens
    user_ttl_seconds: int = env_field(
        90 * 24 * 60 * 60,
        "USER_TTL_SECONDS",
        description="Lifetime of an active session token; refreshed on each successful validation",
    )
    token_grace_period_seconds: int = env_field(
        30 * 24 * 60 * 60,
        "TOKEN_GRACE_PERIOD_SECONDS",
        description="How long a rotated-out token still authenticates with allow_expired",
    )
    token_bytes: int = env_field(32, "TOKEN_BYTES")

    # Passwords
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(
        65536, "ARGON2_MEMORY_COST", description="Argon2 memory cost in KiB"
    )
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Abuse guard
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(60, "REGISTER_RATE_WINDOW_SECONDS")
    register_block_ttl_seconds: int = env_field(24 * 60 * 60, "REGISTER_BLOCK_TTL_SECONDS")
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS")
    refresh_rate_limit: int = env_field(10, "REFRESH_RATE_LIMIT")
    refresh_rate_window_seconds: int = env_field(60, "REFRESH_RATE_WINDOW_SECONDS")

    # Rooms
    admin_usernames: list[str] = env_field(
        ["ryo"],
        "ADMIN_USERNAMES",
        description="Comma-separated usernames allowed to create and delete public rooms",
    )
    room_presence_ttl_seconds: int = env_field(24 * 60 * 60, "ROOM_PRESENCE_TTL_SECONDS")
    extra_blocked_words: list[str] = env_field([], "EXTRA_BLOCKED_WORDS")

    # Listen-together
    listen_session_ttl_seconds: int = env_field(4 * 60 * 60, "LISTEN_SESSION_TTL_SECONDS")
    listen_session_max_users: int = env_field(10, "LISTEN_SESSION_MAX_USERS")
    listen_session_stale_seconds: int = env_field(30 * 60, "LISTEN_SESSION_STALE_SECONDS")
    listen_reaction_max_length: int = env_field(8, "LISTEN_REACTION_MAX_LENGTH")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("admin_usernames", "extra_blocked_words", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> list[str]:
        return _parse_csv(value)

    @field_validator(
        "user_ttl_seconds",
        "token_grace_period_seconds",
        "room_presence_ttl_seconds",
        "listen_session_ttl_seconds",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator("token_bytes")
    @classmethod
    def _enough_entropy(cls, value: int) -> int:
        if value < 16:
            logger.warning("token_bytes_too_small", token_bytes=value, using=32)
            return 32
        return value

    @property
    def register_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy(
            scope="auth:register",
            identifier_class="ip",
            window_seconds=self.register_rate_window_seconds,
            limit=self.register_rate_limit,
            block_ttl_seconds=self.register_block_ttl_seconds,
            block_scope="register",
        )

    @property
    def login_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy(
            scope="auth:login",
            identifier_class="ip",
            window_seconds=self.login_rate_window_seconds,
            limit=self.login_rate_limit,
        )

    @property
    def refresh_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy(
            scope="auth:refresh",
            identifier_class="ip",
            window_seconds=self.refresh_rate_window_seconds,
            limit=self.refresh_rate_limit,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

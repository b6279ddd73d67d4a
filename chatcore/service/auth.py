from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from chatcore.config import Settings
from chatcore.logging import get_logger
from chatcore.service.credentials import CredentialStore
from chatcore.service.errors import (
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
)
from chatcore.service.passwords import PasswordHashing
from chatcore.service.rate_limit import RateLimiter
from chatcore.service.tokens import TokenManager
from chatcore.service.users import UserDirectory
from chatcore.service.validation import (
    normalize_username,
    validate_password,
    validate_username,
)
from chatcore.storage.models import TokenInfo, UserRecord

logger = get_logger(__name__)

_UNKNOWN_IP = "unknown"


@dataclass
class AuthOutcome:
    user: UserRecord
    token: str
    was_expired: bool = False


class AuthService:
    """Registration, login and token housekeeping built on the core stores."""

    def __init__(
        self,
        settings: Settings,
        users: UserDirectory,
        credentials: CredentialStore,
        tokens: TokenManager,
        limiter: RateLimiter,
        hasher: PasswordHashing,
    ) -> None:
        self.settings = settings
        self.users = users
        self.credentials = credentials
        self.tokens = tokens
        self.limiter = limiter
        self.hasher = hasher

    def _check_password_shape(self, password: Optional[str]) -> str:
        return validate_password(
            password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )

    async def register(
        self, username: Optional[str], password: Optional[str], *, ip: Optional[str] = None
    ) -> AuthOutcome:
        # Runs before validation so malformed attempts still count.
        await self.limiter.enforce(self.settings.register_policy, ip or _UNKNOWN_IP)

        name = validate_username(username, extra_blocked=self.settings.extra_blocked_words)
        secret = self._check_password_shape(password)

        user = await self.users.create_user(name)
        await self.credentials.set_password_hash(name, self.hasher.hash(secret))
        token = await self.tokens.issue_token(name)
        logger.info("user_registered", username=name)
        return AuthOutcome(user=user, token=token)

    async def _verify_login(self, username: str, password: Optional[str]) -> UserRecord:
        user = await self.users.get_user(username)
        if user is None:
            logger.info("login_unknown_user", username=username)
            raise InvalidCredentialsError("Invalid username or password")
        stored_hash = await self.credentials.get_password_hash(username)
        if not stored_hash or not password:
            logger.info("login_no_password", username=username)
            raise InvalidCredentialsError("Invalid username or password")
        if not self.hasher.verify(stored_hash, password):
            logger.info("login_password_mismatch", username=username)
            raise InvalidCredentialsError("Invalid username or password")
        if user.banned:
            raise ForbiddenError("Account is banned", detail={"reason": user.ban_reason})
        if self.hasher.needs_rehash(stored_hash):
            await self.credentials.set_password_hash(username, self.hasher.hash(password))
        return user

    async def login(
        self,
        username: Optional[str],
        password: Optional[str],
        *,
        old_token: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthOutcome:
        name = normalize_username(username)
        if not name or not password:
            raise InvalidCredentialsError("Username and password are required")
        await self.limiter.enforce(self.settings.login_policy, ip or _UNKNOWN_IP)

        user = await self._verify_login(name, password)

        token: Optional[str] = None
        if old_token:
            try:
                token = await self.tokens.rotate_token(name, old_token)
            except InvalidTokenError:
                # Foreign or unknown old tokens are left alone.
                logger.info("login_old_token_ignored", username=name)
        if token is None:
            token = await self.tokens.issue_token(name)
        user = await self.users.touch(name) or user
        logger.info("user_logged_in", username=name, rotated=bool(old_token))
        return AuthOutcome(user=user, token=token)

    async def refresh(
        self, username: Optional[str], token: Optional[str], *, ip: Optional[str] = None
    ) -> AuthOutcome:
        """Exchange a live or grace-window token for a fresh one."""
        await self.limiter.enforce(self.settings.refresh_policy, ip or _UNKNOWN_IP)
        name = normalize_username(username)
        user = await self.users.get_user(name) if name else None
        if name and user is None:
            raise NotFoundError("User not found", detail={"username": name})

        result = await self.tokens.require_auth(name, token, allow_expired=True)
        if result.expired:
            # The grace slot already holds this token; do not re-arm it.
            new_token = await self.tokens.issue_token(name)
        else:
            new_token = await self.tokens.rotate_token(name, token or "")
        logger.info("token_refreshed", username=name, was_expired=result.expired)
        return AuthOutcome(user=user, token=new_token, was_expired=result.expired)

    async def logout(self, username: Optional[str], token: Optional[str]) -> None:
        await self.tokens.require_auth(username, token)
        await self.tokens.delete_token(token or "")
        logger.info("user_logged_out", username=normalize_username(username))

    async def logout_all(self, username: Optional[str], token: Optional[str]) -> int:
        await self.tokens.require_auth(username, token)
        return await self.tokens.delete_all_user_tokens(normalize_username(username))

    async def list_tokens(self, username: Optional[str], token: Optional[str]) -> List[TokenInfo]:
        await self.tokens.require_auth(username, token)
        return await self.tokens.list_tokens(normalize_username(username))

    async def set_password(
        self, username: Optional[str], token: Optional[str], new_password: Optional[str]
    ) -> None:
        await self.tokens.require_auth(username, token)
        secret = self._check_password_shape(new_password)
        await self.credentials.set_password_hash(
            normalize_username(username), self.hasher.hash(secret)
        )

    async def has_password(self, username: Optional[str], token: Optional[str]) -> bool:
        await self.tokens.require_auth(username, token)
        return await self.credentials.has_password(normalize_username(username))


__all__ = ["AuthService", "AuthOutcome"]

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

_correlation_id: ContextVar[Optional[str]] = ContextVar("chatcore_correlation_id", default=None)

# Substrings of event keys whose values are masked before rendering
_SECRET_KEY_PARTS = ("password", "secret", "token", "hash", "authorization")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id (generated when omitted) to the current context."""
    value = correlation_id or uuid.uuid4().hex
    _correlation_id.set(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    current = get_correlation_id()
    if current:
        event_dict.setdefault("correlation_id", current)
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask token, password and hash values, keeping the last four characters.

    The suffix matches what ``list_tokens`` shows users, so an operator can line
    a log entry up with a masked listing without ever seeing the full value.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        lowered = key.lower()
        if any(part in lowered for part in _SECRET_KEY_PARTS):
            event_dict[key] = f"***{value[-4:]}"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the process-wide structlog pipeline.

    JSON lines are the default; ``LOG_JSON=false`` or ``LOG_DEV_MODE=true``
    switches to the console renderer.
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output and not development_mode:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not travel back to a caller inside an error message
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)rediss?://\S+"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp)/\S+"),
    re.compile(r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Remove connection strings, filesystem paths and inline credentials.

    Args:
        error: Raw message, typically ``str(exc)`` from the store client
        replacement: Text substituted for each removed fragment

    Returns:
        A message that is safe to log or return, at most 500 characters
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    cleaned = error
    for pattern in _LEAKY_FRAGMENTS:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_ERROR_LENGTH:
        cleaned = cleaned[: _MAX_ERROR_LENGTH - 3] + "..."
    return cleaned


__all__ = [
    "get_logger",
    "get_correlation_id",
    "set_correlation_id",
    "sanitize_error_message",
]

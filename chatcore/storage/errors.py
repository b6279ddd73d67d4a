from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the backing key-value store fails or is unreachable."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class WrongTypeError(StoreError):
    """Raised when a command targets a key holding a different value type."""


__all__ = ["StoreError", "WrongTypeError"]

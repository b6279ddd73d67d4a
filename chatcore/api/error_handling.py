from __future__ import annotations

from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from chatcore.api.schemas import Envelope, ErrorBody
from chatcore.logging import get_logger, sanitize_error_message
from chatcore.service.errors import InternalError, ServiceError
from chatcore.storage.errors import StoreError

logger = get_logger(__name__)

# Stable error codes for statuses that do not come from a ServiceError
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_envelope(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> Envelope:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    return Envelope(status="error", status_code=status_code, error=error_body)


def envelope_for_exception(operation: str, exc: BaseException) -> Envelope:
    """Map any failure raised inside the core to a structured error result."""
    if isinstance(exc, ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            operation=operation,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return error_envelope(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    if isinstance(exc, PydanticValidationError):
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        logger.warning("request_validation_error", operation=operation, errors=errors)
        return error_envelope(400, "Invalid request body", errors, code="validation_error")

    if isinstance(exc, StoreError):
        logger.error(
            "store_error",
            operation=operation,
            error=sanitize_error_message(exc.message),
            detail=exc.detail,
        )
        internal = InternalError("Storage is unavailable")
        return error_envelope(internal.status_code, internal.message, code=internal.error_code)

    logger.error(
        "unhandled_exception",
        operation=operation,
        error_type=type(exc).__name__,
        error=sanitize_error_message(str(exc)),
        exc_info=exc,
    )
    return error_envelope(500, "Internal server error", code="server_error")


async def guarded(
    operation: str,
    call: Callable[[], Awaitable[Any]],
    *,
    success_status: int = 200,
) -> Envelope:
    """Run ``call`` and always come back with an :class:`Envelope`."""
    try:
        data = await call()
    except Exception as exc:
        return envelope_for_exception(operation, exc)
    return Envelope(status="ok", status_code=success_status, data=data)


__all__ = ["guarded", "error_envelope", "envelope_for_exception"]

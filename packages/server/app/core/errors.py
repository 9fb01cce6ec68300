"""
Error taxonomy for the channel lifecycle and the FastAPI handlers that render it.

Nothing here is process-fatal: every error is a rejected operation with an
explanatory body.

    ChannelError
    ├── ValidationError          422  field-scoped messages, nothing persisted
    ├── InvalidTransition        409  event not legal from the current state
    ├── LimitExceeded            429  confirmation resend limit reached
    ├── Suppressed               409  channel is bouncing
    ├── UpstreamDeliveryFailure  502  dispatcher failed after state was committed
    └── NotFound                 404
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from commchannels_shared.schemas.common import ErrorDetail, ErrorResponse

log = structlog.get_logger()


class ChannelError(Exception):
    """Base exception for channel lifecycle errors."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "An unexpected error occurred"):
        super().__init__(message)
        self.message = message


class ValidationError(ChannelError):
    """One or more fields failed validation."""

    status_code = 422
    error_code = "VALIDATION_FAILED"

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = {field: list(messages) for field, messages in errors.items()}
        summary = "; ".join(f"{f} {m}" for f, msgs in self.errors.items() for m in msgs)
        super().__init__(summary or "Validation failed")

    def __contains__(self, field: str) -> bool:
        return field in self.errors


class InvalidTransition(ChannelError):
    status_code = 409
    error_code = "INVALID_TRANSITION"

    def __init__(self, state: str, event: str):
        self.state = state
        self.event = event
        super().__init__(f"Cannot {event} a channel in state '{state}'")


class LimitExceeded(ChannelError):
    status_code = 429
    error_code = "CONFIRMATION_LIMIT_EXCEEDED"


class Suppressed(ChannelError):
    status_code = 409
    error_code = "CHANNEL_SUPPRESSED"


class UpstreamDeliveryFailure(ChannelError):
    status_code = 502
    error_code = "UPSTREAM_DELIVERY_FAILED"

    def __init__(self, message: str, *, kind: Optional[str] = None):
        self.kind = kind
        super().__init__(message)


class NotFound(ChannelError):
    status_code = 404
    error_code = "NOT_FOUND"


class FieldErrors:
    """Collects field-level messages during validation."""

    def __init__(self) -> None:
        self._errors: dict[str, list[str]] = {}

    def add(self, field: str, message: str) -> None:
        self._errors.setdefault(field, []).append(message)

    def __bool__(self) -> bool:
        return bool(self._errors)

    def raise_if_any(self) -> None:
        if self._errors:
            raise ValidationError(self._errors)


def error_body(exc: ChannelError) -> dict[str, Any]:
    body = ErrorResponse(
        error=ErrorDetail(code=exc.error_code, message=exc.message, status=exc.status_code),
        errors=exc.errors if isinstance(exc, ValidationError) else None,
    )
    return body.model_dump(exclude_none=True)


async def _channel_error_handler(request: Request, exc: ChannelError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning("request.failed", path=request.url.path, code=exc.error_code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


def register_error_handlers(app: FastAPI) -> None:
    """Attach the channel error handlers to a FastAPI app."""
    app.add_exception_handler(ChannelError, _channel_error_handler)

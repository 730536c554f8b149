from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..schemas.timer import TimerError, TimerErrorCode


class PersistenceError(Exception):
    """Raised by a ticket time store when a read or write did not go through."""


class TicketNotFound(ValueError):
    """Raised when a ticket id does not exist. Retrying cannot help."""


class ErrorEnvelope(JSONResponse):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"code": code, "message": message}
        if details is not None:
            payload["details"] = details
        super().__init__(payload, status_code=status_code, headers=headers)


TIMER_ERROR_STATUS: dict[TimerErrorCode, int] = {
    TimerErrorCode.ALREADY_RUNNING_ELSEWHERE: status.HTTP_409_CONFLICT,
    TimerErrorCode.SERVER_TIMER_ACTIVE: status.HTTP_409_CONFLICT,
    TimerErrorCode.CONFLICTED: status.HTTP_409_CONFLICT,
    TimerErrorCode.MISSING_WORK_NOTES: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TimerErrorCode.NO_ACTIVE_TIMER: status.HTTP_404_NOT_FOUND,
    TimerErrorCode.NOTHING_TO_RECOVER: status.HTTP_404_NOT_FOUND,
    TimerErrorCode.TICKET_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    TimerErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    TimerErrorCode.PERSISTENCE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def timer_error_response(error: TimerError, details: Any | None = None) -> ErrorEnvelope:
    headers = {"Retry-After": "1"} if error.retryable else None
    return ErrorEnvelope(
        status_code=TIMER_ERROR_STATUS.get(error.code, status.HTTP_400_BAD_REQUEST),
        code=error.code.value,
        message=error.message,
        details=details,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Error"
    details = detail if isinstance(detail, dict) else None
    return ErrorEnvelope(status_code=exc.status_code, code="http_error", message=message, details=details)


async def validation_exception_handler(request: Request, exc):  # type: ignore[override]
    from fastapi.exceptions import RequestValidationError

    if isinstance(exc, RequestValidationError):
        return ErrorEnvelope(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="validation_error",
            message="Validation failed",
            details={"errors": jsonable_encoder(exc.errors())},
        )
    raise exc


async def persistence_exception_handler(request: Request, exc: PersistenceError):
    return ErrorEnvelope(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code=TimerErrorCode.PERSISTENCE_FAILURE.value,
        message=str(exc) or "Storage unavailable",
        headers={"Retry-After": "1"},
    )

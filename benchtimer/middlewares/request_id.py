from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
principal_ctx_var: ContextVar[str | None] = ContextVar("principal_id", default=None)
logger = logging.getLogger("benchtimer.request")

# Requests slower than this are logged at WARNING.
SLOW_REQUEST_MS = 1000.0


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate each request and report how it went.

    The calling operator is taken from ``X-Operator-Id`` up front so that
    timer log lines emitted while handling the request carry it; the
    dependency that validates the operator overwrites it with the checked
    value.
    """

    def __init__(self, app, header_name: str = "X-Request-ID") -> None:  # type: ignore[override]
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(self.header_name) or uuid4().hex
        operator = (request.headers.get("X-Operator-Id") or "").strip()
        rid_token = request_id_ctx_var.set(request_id)
        principal_token = principal_ctx_var.set(f"operator:{operator}" if operator else None)
        request.state.request_id = request_id
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request.failed",
                extra={"extra_data": {"method": request.method, "path": request.url.path}},
            )
            raise
        finally:
            request_id_ctx_var.reset(rid_token)
            principal_ctx_var.reset(principal_token)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[self.header_name] = request_id
        response.headers.setdefault("X-Response-Time", f"{elapsed_ms:.2f}ms")

        fields = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": elapsed_ms,
        }
        principal = getattr(request.state, "principal", None)
        if principal:
            fields["principal"] = principal
        if response.status_code >= 500 or elapsed_ms >= SLOW_REQUEST_MS:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, "request.completed", extra={"extra_data": fields})
        return response

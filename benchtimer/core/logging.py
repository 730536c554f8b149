"""Structured logging for the timer service.

Every record is rendered as one JSON object. Fields passed through
``extra={"extra_data": {...}}`` are merged in, and the correlation id and
operator of the current request are attached when a request is in flight.
``LOG_FORMAT=text`` switches to a plain single-line format for local work.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from ..middlewares import principal_ctx_var, request_id_ctx_var

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s %(message)s"

# Third-party loggers that repeat what the request middleware already reports.
QUIET_LOGGERS = ("uvicorn.access",)


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, var in (("request_id", request_id_ctx_var), ("principal", principal_ctx_var)):
            value = var.get()
            if value:
                payload[key] = value
        extra = getattr(record, "extra_data", None)
        if isinstance(extra, Mapping):
            payload.update(extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=_json_default)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    handler = logging.StreamHandler()
    if fmt == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JsonLogFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

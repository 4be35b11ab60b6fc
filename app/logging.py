from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict

from flask import Flask, g, request

REQUEST_ID_HEADER = "X-Request-ID"

# Optional record attributes copied into each JSON line when set.
CONTEXT_FIELDS = ("request_id", "pool_guid", "operation", "method", "path", "status_code")


class RequestIdFilter(logging.Filter):
    """Attach the active request ID to records logged while serving a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = current_request_id()
        return True


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record. Pool operations add pool_guid and operation via `extra`."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"
    default_msec_format = "%s.%03dZ"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def _level(app: Flask) -> int:
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    return level if isinstance(level, int) else logging.INFO


def init_logging(app: Flask) -> None:
    """Send app, pool and reconciler logs through one JSON handler and tag requests with an ID."""

    level = _level(app)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLineFormatter())
    handler.addFilter(RequestIdFilter())

    # Flask's default handler would print every line twice.
    app.logger.handlers.clear()
    app.logger.addHandler(handler)
    app.logger.setLevel(level)
    app.logger.propagate = False

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.addHandler(handler)
        root_logger.setLevel(level)

    @app.before_request
    def _assign_request_id() -> None:
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

    @app.after_request
    def _log_request(response):
        request_id = current_request_id()
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        app.logger.info(
            "request complete",
            extra={"method": request.method, "path": request.path, "status_code": response.status_code},
        )
        return response


def current_request_id() -> str | None:
    """Return the request ID for the active request context if present."""

    try:
        return getattr(g, "request_id", None)
    except RuntimeError:
        return None

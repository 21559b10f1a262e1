"""Structured logging for the tracker.

Every record is one JSON object. Records emitted while a request is being
handled also carry the endpoint and the signed-in user id.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from flask import g, has_request_context, request

LOG_FILENAME = "app.log"


class RequestContextFilter(logging.Filter):
    """Attach the current endpoint and user to records logged in a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            user = g.get("user")
            record.request = {
                "method": request.method,
                "endpoint": request.endpoint,
                "user_id": user.id if user is not None else None,
            }
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("event", "context", "request"):
            value = getattr(record, key, None)
            if value:
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def setup_logging(logs_dir: Path, level: int = logging.INFO) -> Path:
    """Route root logging to stdout and ``logs_dir/app.log``.

    Calling this again (one app per test, say) replaces the handlers from
    the previous call and closes the old log file.

    Returns:
        Path of the log file.
    """

    logs_dir.mkdir(parents=True, exist_ok=True)
    logfile = logs_dir / LOG_FILENAME

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()

    formatter = JsonFormatter()
    context_filter = RequestContextFilter()
    for handler in (
        logging.FileHandler(logfile, encoding="utf-8"),
        logging.StreamHandler(),
    ):
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root.addHandler(handler)
    return logfile

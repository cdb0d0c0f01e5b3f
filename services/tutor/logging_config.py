"""Process logging for the tutor API.

``LOG_FORMAT=json`` switches stderr output to one JSON object per line; anything
else gives the text layout. Every record carries the request id of the request
(or producer thread) that emitted it. HTTP and AWS client libraries are held at
``PROVIDER_LOG_LEVEL`` so streamed provider traffic does not flood the log.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from . import settings
from .request_context import RequestIdFilter

_PROVIDER_LOGGERS = ("urllib3", "botocore", "boto3", "s3transfer")
_TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] [%(threadName)s] [rid=%(request_id)s] %(message)s"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        rid = getattr(record, "request_id", None)
        if rid and rid != "-":
            payload["request_id"] = rid
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _level(name: str, default: int) -> int:
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else default


def configure_logging() -> None:
    root = logging.getLogger()
    root.setLevel(_level(settings.log_level(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(_JsonFormatter() if settings.log_format() == "json" else logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)

    provider_level = _level(settings.provider_log_level(), logging.WARNING)
    for name in _PROVIDER_LOGGERS:
        logging.getLogger(name).setLevel(provider_level)

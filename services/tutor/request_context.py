"""Per-request correlation id.

The app middleware binds ``REQUEST_ID`` for every request, reusing a well-formed
inbound ``x-request-id`` header. Generation producer threads and background tasks
are started under ``contextvars.copy_context()`` so their log lines and diagnostic
events carry the id of the request that spawned them.
"""
from __future__ import annotations

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Optional

REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="")
REQUEST_ID_HEADER = "x-request-id"

_INBOUND_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def new_request_id() -> str:
    return uuid.uuid4().hex[:16]


def accept_request_id(raw: Optional[str]) -> str:
    candidate = (raw or "").strip()
    if _INBOUND_ID.fullmatch(candidate):
        return candidate
    return new_request_id()


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", ""):
            record.request_id = REQUEST_ID.get() or "-"  # type: ignore[attr-defined]
        return True

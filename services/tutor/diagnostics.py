from __future__ import annotations

import json
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from .config import DIAG_LOG_ENABLED, DIAG_LOG_PATH
from .request_context import REQUEST_ID

_log = logging.getLogger(__name__)


def _setup_diag_logger() -> Optional[logging.Logger]:
    if not DIAG_LOG_ENABLED:
        return None
    DIAG_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger("tutor.diag")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = RotatingFileHandler(str(DIAG_LOG_PATH), maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    return logger


_DIAG_LOGGER = _setup_diag_logger()


def diag_log(event: str, payload: Optional[Dict[str, Any]] = None) -> None:
    if _DIAG_LOGGER is None:
        return
    record: Dict[str, Any] = {
        "ts": datetime.now().isoformat(timespec="seconds"),
        "event": event,
    }
    request_id = REQUEST_ID.get("")
    if request_id:
        record["request_id"] = request_id
    if payload:
        record.update(payload)
    try:
        _DIAG_LOGGER.info(json.dumps(record, ensure_ascii=False, default=str))
    except Exception:
        _log.debug("diag_log write failed event=%s", event, exc_info=True)

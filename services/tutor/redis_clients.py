"""Process-wide Redis connections, one per (url, decode_responses) pair."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Tuple

import redis

from . import settings

_log = logging.getLogger(__name__)

CONNECT_TIMEOUT_SEC = 2.0

_clients: Dict[Tuple[str, bool], redis.Redis] = {}
_clients_lock = threading.Lock()


def get_redis_client(url: Optional[str] = None, *, decode_responses: bool = True) -> redis.Redis:
    target = (url or settings.redis_url()).strip()
    key = (target, bool(decode_responses))
    with _clients_lock:
        if key not in _clients:
            _clients[key] = redis.Redis.from_url(
                target,
                decode_responses=decode_responses,
                socket_connect_timeout=CONNECT_TIMEOUT_SEC,
            )
        return _clients[key]


def redis_health(client: Optional[Any]) -> Dict[str, Any]:
    """Health-check entry for ``/health``; ``skipped`` when the cache is in memory."""
    if client is None:
        return {"status": "skipped", "reason": "memory_cache"}
    try:
        client.ping()
    except Exception as exc:
        _log.warning("health: Redis ping failed", exc_info=True)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok"}

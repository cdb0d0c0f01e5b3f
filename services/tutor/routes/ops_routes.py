from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..container import AppContainer
from ..redis_clients import redis_health

_log = logging.getLogger(__name__)
_DISK_MIN_BYTES = 100 * 1024 * 1024  # 100 MB


def _check_disk(container: AppContainer) -> dict:
    try:
        check_path = Path(container.store.data_dir)
        # statvfs needs an existing path
        while not check_path.exists() and check_path.parent != check_path:
            check_path = check_path.parent
        usage = shutil.disk_usage(str(check_path))
        return {
            "status": "ok" if usage.free >= _DISK_MIN_BYTES else "degraded",
            "free_mb": int(usage.free / (1024 * 1024)),
        }
    except Exception as exc:
        _log.warning("health: disk check failed", exc_info=True)
        return {"status": "error", "detail": str(exc)}


def build_ops_router(container: AppContainer) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health() -> Any:
        checks = {"redis": redis_health(container.redis_client), "disk": _check_disk(container)}
        degraded = any(c.get("status") not in ("ok", "skipped") for c in checks.values())
        payload = {"status": "degraded" if degraded else "ok", "checks": checks}
        return JSONResponse(content=payload, status_code=503 if degraded else 200)

    @router.get("/ops/metrics")
    async def metrics() -> Any:
        snapshot = container.observability.snapshot()
        snapshot["rate_limiter_tracked_keys"] = len(container.rate_limiter)
        return snapshot

    return router

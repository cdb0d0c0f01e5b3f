from __future__ import annotations

import contextvars
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from .diagnostics import diag_log

_log = logging.getLogger(__name__)


class BackgroundRunner:
    """Detached best-effort work (cache writes, message overwrites).

    Submitted tasks are independent of the request that spawned them; a failure
    is logged and recorded with ``diag_log`` under ``failure_event``, never raised.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="tutor-bg")

    def submit(self, fn: Callable[..., Any], *args: Any, failure_event: str = "background.failed", **kwargs: Any) -> Future:
        ctx = contextvars.copy_context()
        future = self._executor.submit(ctx.run, fn, *args, **kwargs)
        future.add_done_callback(lambda f: log_background_failure(f, failure_event))
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def log_background_failure(future: Future, failure_event: str) -> None:
    if future.cancelled():
        return
    exc: Optional[BaseException] = future.exception()
    if exc is None:
        return
    _log.error("%s: %s", failure_event, exc, exc_info=(type(exc), exc, exc.__traceback__))
    diag_log(failure_event, {"error": type(exc).__name__, "detail": str(exc)[:200]})

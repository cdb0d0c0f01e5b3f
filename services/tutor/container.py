from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from llm_gateway import ModelRegistry

from . import config
from .background_tasks import BackgroundRunner
from .observability import GenerationObservability
from .rate_limit import FixedWindowRateLimiter
from .session_store import SessionStore
from .summary_cache import SummaryCache, build_summary_cache_store


@dataclass(frozen=True)
class RateLimitPolicy:
    window_ms: int = config.RATE_LIMIT_WINDOW_MS
    session_llm_per_window: int = config.RATE_LIMIT_SESSION_LLM_PER_MIN
    summary_per_window: int = config.RATE_LIMIT_SUMMARY_PER_MIN
    pills_per_window: int = config.RATE_LIMIT_PILLS_PER_MIN


@dataclass(frozen=True)
class AppContainer:
    """Process-scoped collaborators handed to every request handler."""

    store: SessionStore
    registry: Any
    rate_limiter: FixedWindowRateLimiter
    summary_cache: SummaryCache
    background: Any
    observability: GenerationObservability
    rate_limits: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    stream_deadline_sec: float = config.LLM_STREAM_DEADLINE_SEC
    channel_max_items: int = config.STREAM_CHANNEL_MAX_ITEMS
    redis_client: Optional[Any] = None


def build_app_container(
    *,
    data_dir: Optional[Path] = None,
    registry: Optional[Any] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
    summary_cache: Optional[SummaryCache] = None,
    background: Optional[Any] = None,
    observability: Optional[GenerationObservability] = None,
    rate_limits: Optional[RateLimitPolicy] = None,
    stream_deadline_sec: Optional[float] = None,
) -> AppContainer:
    if summary_cache is None:
        summary_cache = SummaryCache(
            build_summary_cache_store(backend=config.SUMMARY_CACHE_BACKEND, redis_url=config.REDIS_URL)
        )
    return AppContainer(
        store=SessionStore(Path(data_dir or config.DATA_DIR)),
        registry=registry
        or ModelRegistry(config.MODEL_REGISTRY_PATH or None, default_model_id=config.LLM_DEFAULT_MODEL_ID or None),
        rate_limiter=rate_limiter or FixedWindowRateLimiter(max_keys=config.RATE_LIMIT_MAX_KEYS),
        summary_cache=summary_cache,
        background=background or BackgroundRunner(max_workers=config.BACKGROUND_WORKERS),
        observability=observability or GenerationObservability(),
        rate_limits=rate_limits or RateLimitPolicy(),
        stream_deadline_sec=float(stream_deadline_sec or config.LLM_STREAM_DEADLINE_SEC),
        redis_client=getattr(summary_cache.store, "redis", None),
    )

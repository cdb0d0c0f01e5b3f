from __future__ import annotations

import logging
import os

_log = logging.getLogger(__name__)


def truthy(value: str) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default)


def env_int(name: str, default: int) -> int:
    try:
        return int(env_str(name, str(default)) or default)
    except Exception:
        _log.debug("numeric conversion failed", exc_info=True)
        return int(default)


def env_float(name: str, default: float) -> float:
    try:
        return float(env_str(name, str(default)) or default)
    except Exception:
        _log.debug("numeric conversion failed", exc_info=True)
        return float(default)


def env_bool(name: str, default: str = "") -> bool:
    return truthy(env_str(name, default))


def data_dir() -> str:
    return env_str("DATA_DIR", "")


def default_model_id() -> str:
    return env_str("LLM_DEFAULT_MODEL_ID", "").strip()


def model_registry_path() -> str:
    return env_str("MODEL_REGISTRY_PATH", "")


def llm_stream_deadline_sec() -> float:
    return max(5.0, env_float("LLM_STREAM_DEADLINE_SEC", 300.0))


def stream_channel_max_items() -> int:
    return max(1, env_int("STREAM_CHANNEL_MAX_ITEMS", 256))


def rate_limit_session_llm_per_min() -> int:
    return max(1, env_int("RATE_LIMIT_SESSION_LLM_PER_MIN", 30))


def rate_limit_summary_per_min() -> int:
    return max(1, env_int("RATE_LIMIT_SUMMARY_PER_MIN", 20))


def rate_limit_pills_per_min() -> int:
    return max(1, env_int("RATE_LIMIT_PILLS_PER_MIN", 30))


def rate_limit_max_keys() -> int:
    return max(16, env_int("RATE_LIMIT_MAX_KEYS", 10_000))


def summary_cache_backend() -> str:
    return env_str("SUMMARY_CACHE_BACKEND", "memory").strip().lower() or "memory"


def redis_url() -> str:
    return env_str("REDIS_URL", "redis://localhost:6379/0")


def background_workers() -> int:
    return max(1, env_int("BACKGROUND_WORKERS", 4))


def diag_log_enabled() -> bool:
    return env_bool("DIAG_LOG", "")


def diag_log_path() -> str:
    return env_str("DIAG_LOG_PATH", "")


def cors_origins() -> str:
    return env_str("CORS_ORIGINS", "*")


def log_format() -> str:
    return env_str("LOG_FORMAT", "text").strip().lower() or "text"


def log_level() -> str:
    return env_str("LOG_LEVEL", "INFO").strip().upper() or "INFO"


def provider_log_level() -> str:
    return env_str("PROVIDER_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"


def api_host() -> str:
    return env_str("API_HOST", "0.0.0.0")


def api_port() -> int:
    return env_int("API_PORT", 8000)

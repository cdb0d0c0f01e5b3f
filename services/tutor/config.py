from __future__ import annotations

from pathlib import Path

from . import settings as _settings

APP_ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = Path(_settings.data_dir() or (APP_ROOT / "data"))
DIAG_LOG_ENABLED = _settings.diag_log_enabled()
DIAG_LOG_PATH = Path(_settings.diag_log_path() or (APP_ROOT / "tmp" / "diagnostics.log"))
CORS_ORIGINS = _settings.cors_origins()

LLM_DEFAULT_MODEL_ID = _settings.default_model_id()
MODEL_REGISTRY_PATH = _settings.model_registry_path()
LLM_STREAM_DEADLINE_SEC = _settings.llm_stream_deadline_sec()
STREAM_CHANNEL_MAX_ITEMS = _settings.stream_channel_max_items()

RATE_LIMIT_WINDOW_MS = 60_000
RATE_LIMIT_SESSION_LLM_PER_MIN = _settings.rate_limit_session_llm_per_min()
RATE_LIMIT_SUMMARY_PER_MIN = _settings.rate_limit_summary_per_min()
RATE_LIMIT_PILLS_PER_MIN = _settings.rate_limit_pills_per_min()
RATE_LIMIT_MAX_KEYS = _settings.rate_limit_max_keys()

SUMMARY_CACHE_BACKEND = _settings.summary_cache_backend()
REDIS_URL = _settings.redis_url()
BACKGROUND_WORKERS = _settings.background_workers()

# Conversation context
MAX_RECENT_MESSAGES = 15
SUMMARY_TRANSCRIPT_MAX_CHARS = 8000
MIN_DEPTH = 1
MAX_DEPTH = 5

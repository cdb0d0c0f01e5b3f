from services.tutor import settings


def test_settings_defaults_and_truthy(monkeypatch):
    for name in ("DIAG_LOG", "SUMMARY_CACHE_BACKEND", "LLM_STREAM_DEADLINE_SEC", "CORS_ORIGINS"):
        monkeypatch.delenv(name, raising=False)

    assert settings.truthy("1") is True
    assert settings.truthy("off") is False
    assert settings.diag_log_enabled() is False
    assert settings.summary_cache_backend() == "memory"
    assert settings.llm_stream_deadline_sec() == 300.0
    assert settings.cors_origins() == "*"


def test_rate_limit_defaults(monkeypatch):
    for name in ("RATE_LIMIT_SESSION_LLM_PER_MIN", "RATE_LIMIT_SUMMARY_PER_MIN", "RATE_LIMIT_PILLS_PER_MIN"):
        monkeypatch.delenv(name, raising=False)

    assert settings.rate_limit_session_llm_per_min() == 30
    assert settings.rate_limit_summary_per_min() == 20
    assert settings.rate_limit_pills_per_min() == 30


def test_settings_conversions_and_floors(monkeypatch):
    monkeypatch.setenv("BACKGROUND_WORKERS", "not-a-number")
    monkeypatch.setenv("LLM_STREAM_DEADLINE_SEC", "1")
    monkeypatch.setenv("RATE_LIMIT_PILLS_PER_MIN", "0")
    monkeypatch.setenv("SUMMARY_CACHE_BACKEND", " Redis ")
    monkeypatch.setenv("DIAG_LOG", "yes")

    assert settings.background_workers() == 4
    assert settings.llm_stream_deadline_sec() == 5.0
    assert settings.rate_limit_pills_per_min() == 1
    assert settings.summary_cache_backend() == "redis"
    assert settings.diag_log_enabled() is True

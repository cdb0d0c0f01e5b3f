from unittest.mock import MagicMock, patch

import pytest

import services.tutor.redis_clients as mod


@pytest.fixture(autouse=True)
def _clear_cache():
    mod._clients.clear()
    yield
    mod._clients.clear()


@patch("redis.Redis.from_url", return_value=MagicMock())
class TestGetRedisClient:
    def test_default_url_comes_from_settings(self, mock_from_url, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        mod.get_redis_client()
        mock_from_url.assert_called_once_with(
            "redis://localhost:6379/0", decode_responses=True, socket_connect_timeout=mod.CONNECT_TIMEOUT_SEC
        )

    def test_one_client_per_url_and_decode_mode(self, mock_from_url):
        c1 = mod.get_redis_client("redis://x:1/0")
        c2 = mod.get_redis_client("redis://x:1/0")
        mod.get_redis_client("redis://x:1/0", decode_responses=False)
        assert c1 is c2
        assert mock_from_url.call_count == 2


def test_redis_health_states() -> None:
    assert mod.redis_health(None)["status"] == "skipped"

    ok = MagicMock()
    assert mod.redis_health(ok) == {"status": "ok"}

    down = MagicMock()
    down.ping.side_effect = ConnectionError("refused")
    assert mod.redis_health(down) == {"status": "error", "detail": "refused"}

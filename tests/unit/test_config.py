"""Tests for run configuration."""

from chatload.config import Settings
from chatload.session.models import SessionConfig


class TestSettings:
    def test_default_settings(self):
        settings = Settings()
        assert settings.app_name == "chatload"
        assert settings.app_version == "0.1.0"
        assert settings.total_users == 1250
        assert settings.send_interval_ms == 10_000

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("TOTAL_USERS", "40")
        monkeypatch.setenv("USER_PREFIX", "loadbot")
        monkeypatch.setenv("CHAT_REFRESH_MS", "0")
        settings = Settings()
        assert settings.total_users == 40
        assert settings.user_prefix == "loadbot"
        assert settings.chat_refresh_ms == 0

    def test_username_for(self):
        settings = Settings(user_prefix="user")
        assert settings.username_for(17) == "user17"

    def test_session_config_converts_to_seconds(self):
        settings = Settings(
            send_interval_ms=2500,
            chat_refresh_ms=0,
            heartbeat_ms=4000,
            session_time_ms=90_000,
            handshake_timeout_seconds=5,
        )
        config = SessionConfig.from_settings(settings)
        assert config.send_interval == 2.5
        assert config.refresh_interval == 0
        assert config.heartbeat_interval == 4.0
        assert config.heartbeat_ms == 4000
        assert config.max_duration == 90.0
        assert config.handshake_timeout == 5

import pytest
from pydantic import ValidationError

from lms_chat.config import Settings, get_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("API_BASE_URL", "REDIS_URL", "LOG_LEVEL", "NOTIFICATION_TTL_SECONDS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings(_env_file=None)

        assert settings.api_base_url == "http://localhost:5000/api"
        assert settings.redis_url is None
        assert settings.notification_ttl_seconds == 5.0
        assert settings.refresh_debounce_seconds == 0.5
        assert settings.presence_ttl_seconds == 60

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("NOTIFICATION_TTL_SECONDS", "2.5")

        settings = Settings(_env_file=None)

        assert settings.redis_url == "redis://cache:6379/1"
        assert settings.log_level == "DEBUG"
        assert settings.notification_ttl_seconds == 2.5

    @pytest.mark.parametrize("field", ["notification_ttl_seconds", "refresh_debounce_seconds", "presence_ttl_seconds"])
    def test_non_positive_durations_are_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()

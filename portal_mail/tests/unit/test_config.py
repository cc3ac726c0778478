"""
Settings parsing
"""
import os
from unittest.mock import patch

from portal_mail.core.config import Settings, get_settings, reload_settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.sync_default_max_results == 50
    assert settings.sync_history_batch_size == 100
    assert settings.send_max_retries == 3
    assert settings.schedule_max_days == 30
    assert settings.retryable_statuses_list == ["failed", "hard", "soft", "complaint"]


def test_list_properties():
    settings = Settings(
        _env_file=None,
        allowed_origins="https://a.example.com, https://b.example.com",
        retryable_statuses=" Failed, soft ,,",
    )

    assert settings.allowed_origins_list == ["https://a.example.com", "https://b.example.com"]
    assert settings.retryable_statuses_list == ["failed", "soft"]


def test_environment_overrides():
    with patch.dict(os.environ, {"SEND_MAX_RETRIES": "5", "SYNC_LEASE_SECONDS": "30"}):
        settings = reload_settings()

        assert settings.send_max_retries == 5
        assert settings.sync_lease_seconds == 30
        assert get_settings() is settings

    reload_settings()

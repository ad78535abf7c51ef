"""
Tests for configuration loading.
"""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from src.supportline.config import Config, ConfigError, get_config


def test_env_values(config):
    assert config.public_host == "test.ngrok.io"
    assert config.ws_url == "wss://test.ngrok.io/media-stream"
    assert config.enable_call_forwarding is True
    assert config.forwarding_active is True
    assert config.kayako_api_url == "https://kayako.test/api/v1"
    assert config.whisper_fallback_enabled is False
    assert config.transfer_grace_seconds == 0.0


def test_defaults():
    config = Config(public_host="example.com")
    assert config.port == 5050
    assert config.forwarding_threshold == 3
    assert config.forwarding_recent_turns == 7
    assert config.speech_start_debounce_ms == 500
    assert config.forwarding_active is False


def test_trailing_slash_stripped():
    with patch.dict(os.environ, {"KAYAKO_API_URL": "https://kayako.test/api/v1/"}):
        get_config.cache_clear()
        assert get_config().kayako_api_url == "https://kayako.test/api/v1"


def test_bad_numbers_fall_back_to_defaults():
    with patch.dict(os.environ, {"FORWARDING_THRESHOLD": "lots", "CONFIDENCE_HIGH": "very"}):
        get_config.cache_clear()
        config = get_config()
        assert config.forwarding_threshold == 3
        assert config.confidence_high == 0.9


def test_validate_passes(config):
    config.validate()


def test_validate_reports_missing_keys(config):
    broken = replace(config, openai_api_key="", kayako_password="")
    with pytest.raises(ConfigError) as exc_info:
        broken.validate()
    assert "OPENAI_API_KEY" in str(exc_info.value)
    assert "KAYAKO_PASSWORD" in str(exc_info.value)


def test_forwarding_requires_number(config):
    with pytest.raises(ConfigError, match="SUPPORT_AGENT_NUMBER"):
        replace(config, support_agent_number="").validate()


def test_ticketing_disabled_skips_kayako_keys(config):
    replace(config, ticketing_enabled=False, kayako_api_url="").validate()


def test_inverted_thresholds_rejected(config):
    with pytest.raises(ConfigError):
        replace(config, confidence_high=0.5, confidence_medium=0.7).validate()

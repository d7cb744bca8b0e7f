"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from stageflow.config import MAX_STAGE_RETRIES, Settings, get_settings, reset_settings_cache


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("STAGE_API_BASE_URL", "http://chat.example/v1")
        monkeypatch.setenv("STAGE_WORKFLOW_BASE_URL", "http://flow.example/v1")
        monkeypatch.setenv("CHAT_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("KEEP_OUTPUT_HISTORY", "true")

        settings = Settings.from_env()

        assert settings.stage_api_base_url == "http://chat.example/v1"
        assert settings.workflow_base_url == "http://flow.example/v1"
        assert settings.chat_timeout_seconds == 12.5
        assert settings.keep_output_history is True

    def test_workflow_url_defaults_to_chat_url(self, monkeypatch):
        monkeypatch.setenv("STAGE_WORKFLOW_BASE_URL", "  ")
        settings = Settings.from_env()
        assert settings.stage_workflow_base_url is None
        assert settings.workflow_base_url == settings.stage_api_base_url

    def test_retries_are_capped(self, monkeypatch):
        """Requests above the ceiling are clamped rather than rejected."""
        monkeypatch.setenv("STAGE_MAX_RETRIES", "12")
        assert Settings.from_env().stage_max_retries == MAX_STAGE_RETRIES

    def test_negative_retries_rejected(self, monkeypatch):
        monkeypatch.setenv("STAGE_MAX_RETRIES", "-1")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_cors_origins_split(self, monkeypatch):
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test, http://b.test,")
        assert Settings.from_env().cors_allow_origins == ["http://a.test", "http://b.test"]

    def test_cached_settings_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("STAGE_USER", "someone-else")
        reset_settings_cache()
        assert get_settings().stage_user == "someone-else"
        reset_settings_cache()


class TestApiKeys:
    def test_per_node_key_overrides_shared(self):
        settings = Settings(
            stage_api_key="shared",
            stage_api_keys='{"tech_package": "pkg-key"}',
        )
        assert settings.api_key_for("tech_package") == "pkg-key"
        assert settings.api_key_for("ai_search") == "shared"

    def test_invalid_key_map_rejected(self):
        with pytest.raises(ValidationError):
            Settings(stage_api_keys="[1, 2]")

    def test_no_keys(self):
        settings = Settings(stage_api_key="")
        assert settings.api_key_for("ai_search") is None


class TestConfidenceWeights:
    def test_defaults(self):
        settings = Settings()
        assert settings.confidence_base == 0.7
        assert settings.confidence_success_bonus == 0.2

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            Settings(confidence_base=1.5)

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            Settings(confidence_low_threshold=0.9, confidence_high_threshold=0.4)

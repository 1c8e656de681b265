"""Tests for configuration and oracle settings."""

import logging
from pathlib import Path

from lbteacher.config import TeacherConfig, get_logger
from lbteacher.llm_config import DEFAULT_PRICING, OracleSettings, get_pricing


class TestTeacherConfig:
    """Test TeacherConfig defaults and environment loading."""

    def test_defaults(self):
        """Defaults match the documented configuration surface."""
        config = TeacherConfig()
        assert config.enabled is False
        assert config.max_tokens_per_call == 8000
        assert config.max_calls_per_day == 100
        assert config.max_calls_per_site == 5
        assert config.monthly_budget_usd == 50.0
        assert config.min_confidence == 80
        assert config.max_attempts == 3
        assert config.visual_verify_cooldown_hours == 24
        assert config.inactive_retry_hours == 24
        assert config.fingerprint_max_age_days == 30

    def test_from_env(self, monkeypatch, tmp_path):
        """LBTEACHER_* variables override defaults."""
        monkeypatch.setenv("LBTEACHER_ENABLED", "yes")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("LBTEACHER_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("LBTEACHER_MAX_CALLS_PER_DAY", "7")
        monkeypatch.setenv("LBTEACHER_MONTHLY_BUDGET_USD", "12.5")
        monkeypatch.setenv("LBTEACHER_CONSENSUS_MIN_AGREEMENT", "0.5")

        config = TeacherConfig.from_env()

        assert config.is_enabled()
        assert config.is_available()
        assert config.max_calls_per_day == 7
        assert config.monthly_budget_usd == 12.5
        assert config.consensus_min_agreement == 0.5
        assert config.profiles_dir == tmp_path / "site-profiles"

    def test_unavailable_without_key(self, monkeypatch):
        """Missing API key means the oracle is unavailable."""
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert TeacherConfig.from_env().is_available() is False

    def test_paths_derived_from_data_dir(self):
        config = TeacherConfig(data_dir="/tmp/lb")
        assert config.usage_file == Path("/tmp/lb/llm-usage.json")
        assert config.flagged_sites_file == Path("/tmp/lb/flagged-sites.json")


class TestLogger:
    def test_handlers_not_duplicated(self):
        """Repeated get_logger calls return one logger with one handler."""
        first = get_logger("lbteacher.test")
        second = get_logger("lbteacher.test")
        assert first is second
        assert len(first.handlers) == 1

    def test_debug_level(self, monkeypatch):
        monkeypatch.setenv("LBTEACHER_DEBUG", "true")
        assert get_logger("lbteacher.test.debug").level == logging.DEBUG


class TestOracleSettings:
    """Test credential resolution and pricing."""

    def test_env_prefix_token(self, monkeypatch):
        monkeypatch.setenv("MY_KEY", "secret")
        settings = OracleSettings(api_token="env:MY_KEY")
        assert settings.resolved_api_token == "secret"
        assert settings.to_dict()["has_api_token"] is True

    def test_messages_url(self):
        settings = OracleSettings(api_token="x", base_url="https://proxy.local/")
        assert settings.messages_url == "https://proxy.local/v1/messages"

    def test_unknown_model_uses_default_pricing(self):
        assert get_pricing("some-future-model") == DEFAULT_PRICING

    def test_cost_per_thousand_tokens(self):
        assert DEFAULT_PRICING.cost(1000, 1000) == 0.003 + 0.015

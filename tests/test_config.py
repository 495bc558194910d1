"""Tests for Settings and ProviderSettings."""

import pytest
from pydantic import ValidationError

from talon.config import ProviderSettings, Settings


class TestProviderSettings:
    def test_key_required_by_default(self):
        assert not ProviderSettings().has_credential("deepseek")
        assert ProviderSettings(api_key="sk-1").has_credential("deepseek")

    def test_placeholder_key_rejected(self):
        assert not ProviderSettings(api_key="${DEEPSEEK_API_KEY}").has_credential("deepseek")

    def test_keyless_providers(self):
        assert ProviderSettings().has_credential("opencode")
        assert ProviderSettings().has_credential("ollama")
        assert ProviderSettings(requires_key=False).has_credential("my-local")

    def test_defaults_and_overrides(self):
        conf = ProviderSettings()
        assert conf.resolved_priority("deepseek") == 1
        assert conf.resolved_priority("unknown") == 5
        assert conf.resolved_quality("anthropic") == 5
        assert conf.resolved_quality("unknown") == 0
        assert ProviderSettings(priority=7, quality=2).resolved_priority("deepseek") == 7


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("TALON_MODEL", raising=False)
        settings = Settings(_env_file=None)
        assert settings.model == "deepseek/deepseek-chat"
        assert settings.default_provider_id == "deepseek"
        assert settings.default_model_name == "deepseek-chat"
        assert settings.max_iterations == 10

    def test_model_without_prefix(self):
        settings = Settings(_env_file=None, model="gpt-4o")
        assert settings.default_provider_id == "gpt-4o"
        assert settings.default_model_name == "gpt-4o"

    def test_env_nested_providers(self, monkeypatch):
        monkeypatch.setenv("TALON_PROVIDERS__DEEPSEEK__API_KEY", "sk-env")
        monkeypatch.setenv("TALON_MAX_ITERATIONS", "4")
        settings = Settings(_env_file=None)
        assert settings.providers["deepseek"].api_key == "sk-env"
        assert settings.max_iterations == 4

    def test_env_json_providers(self, monkeypatch):
        monkeypatch.setenv("TALON_PROVIDERS", '{"openai": {"api_key": "sk-json", "models": ["gpt-4o"]}}')
        settings = Settings(_env_file=None)
        assert settings.providers["openai"].models == ["gpt-4o"]

    def test_hard_floor_must_not_exceed_warn(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, context_warn_threshold=1000, context_hard_floor=2000)

    def test_keep_recent_below_threshold(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, compression_keep_recent=50, compression_message_threshold=50)

    def test_iteration_bounds(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_iterations=0)

    def test_history_window_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_history_messages=0)

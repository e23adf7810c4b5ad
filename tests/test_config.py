"""Tests for configuration and API key resolution."""

import os

import pytest
from pydantic import ValidationError

from bank_autopilot.config import (
    NO_KEY_PROVIDERS,
    STANDARD_ENV_VAR_NAMES,
    AppSettings,
    ColumnMapping,
    LLMSettings,
    PlaybackSettings,
    ScraperSettings,
)


class TestStandardEnvVarNames:
    """Test that standard env var names are correctly defined."""

    def test_all_providers_have_standard_names(self):
        """All hosted vision providers that need keys should have standard names defined."""
        assert set(STANDARD_ENV_VAR_NAMES.keys()) == {"openai", "anthropic", "google", "azure_openai", "openrouter"}

    def test_standard_names_format(self):
        """Standard names should follow PROVIDER_API_KEY format."""
        for provider, env_vars in STANDARD_ENV_VAR_NAMES.items():
            vars_to_check = env_vars if isinstance(env_vars, list) else [env_vars]
            for env_var in vars_to_check:
                assert env_var.endswith("_API_KEY"), f"{provider} env var {env_var} should end with _API_KEY"
                assert env_var.isupper(), f"{provider} env var {env_var} should be uppercase"


class TestNoKeyProviders:
    def test_ollama_no_key(self):
        assert "ollama" in NO_KEY_PROVIDERS

    def test_bedrock_no_key(self):
        """Bedrock uses AWS credentials instead of an API key."""
        assert "bedrock" in NO_KEY_PROVIDERS


class TestApiKeyResolution:
    """Test API key resolution priority logic."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in list(os.environ.keys()):
            if "API_KEY" in var or var.startswith("AUTOPILOT_LLM_"):
                monkeypatch.delenv(var, raising=False)

    def test_generic_override_takes_priority(self, monkeypatch):
        """AUTOPILOT_LLM_API_KEY should override all other sources."""
        monkeypatch.setenv("AUTOPILOT_LLM_API_KEY", "generic-key")
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("AUTOPILOT_LLM_OPENAI_API_KEY", "prefixed-key")
        monkeypatch.setenv("AUTOPILOT_LLM_PROVIDER", "openai")

        assert LLMSettings().get_api_key_for_provider() == "generic-key"

    def test_standard_name_over_prefixed(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("AUTOPILOT_LLM_OPENAI_API_KEY", "prefixed-key")
        monkeypatch.setenv("AUTOPILOT_LLM_PROVIDER", "openai")

        assert LLMSettings().get_api_key_for_provider() == "standard-key"

    def test_prefixed_fallback(self, monkeypatch):
        monkeypatch.setenv("AUTOPILOT_LLM_ANTHROPIC_API_KEY", "prefixed-key")

        assert LLMSettings(provider="anthropic").get_api_key_for_provider() == "prefixed-key"

    def test_gemini_key_before_google_key(self, monkeypatch):
        """Google accepts either name; GEMINI_API_KEY wins when both are set."""
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
        monkeypatch.setenv("GOOGLE_API_KEY", "google-key")

        assert LLMSettings(provider="google").get_api_key_for_provider() == "gemini-key"

    def test_google_key_alone(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "google-key")

        assert LLMSettings(provider="google").get_api_key_for_provider() == "google-key"

    def test_explicit_provider_argument(self, monkeypatch):
        """The provider argument overrides the configured provider."""
        monkeypatch.setenv("OPENROUTER_API_KEY", "router-key")

        assert LLMSettings(provider="anthropic").get_api_key_for_provider("openrouter") == "router-key"

    def test_missing_key_returns_none(self):
        assert LLMSettings(provider="openai").get_api_key_for_provider() is None

    def test_requires_api_key(self):
        assert LLMSettings(provider="openai").requires_api_key()
        assert not LLMSettings(provider="ollama").requires_api_key()


class TestPlaybackSettings:
    def test_defaults(self):
        playback = PlaybackSettings()
        assert playback.retry_attempts == 3
        assert playback.retry_delay == 1.0
        assert playback.click_settle_delay == 1.5
        assert playback.input_settle_delay == 0.5
        assert playback.start_url_settle_delay == 2.0
        assert playback.navigation_timeout == 15.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("AUTOPILOT_PLAYBACK_RETRY_ATTEMPTS", "5")
        monkeypatch.setenv("AUTOPILOT_PLAYBACK_RETRY_DELAY", "0.25")

        playback = PlaybackSettings()
        assert playback.retry_attempts == 5
        assert playback.retry_delay == 0.25

    def test_at_least_one_attempt(self):
        with pytest.raises(ValidationError):
            PlaybackSettings(retry_attempts=0)


class TestScraperSettings:
    def test_vision_disabled_by_default(self, monkeypatch):
        monkeypatch.delenv("AUTOPILOT_SCRAPER_VISION_PROVIDER", raising=False)
        assert ScraperSettings().vision_provider == "none"

    def test_column_mappings_by_institution(self):
        scraper = ScraperSettings(column_mappings={"First Bank": {"date": 0, "description": 2, "amount": 3}})
        mapping = scraper.column_mappings["First Bank"]
        assert isinstance(mapping, ColumnMapping)
        assert (mapping.date, mapping.description, mapping.amount, mapping.balance) == (0, 2, 3, None)

    def test_unknown_vision_provider_rejected(self):
        with pytest.raises(ValidationError):
            ScraperSettings(vision_provider="carrier-pigeon")


class TestAppSettings:
    def test_database_path_override(self, tmp_path):
        db = tmp_path / "nested" / "autopilot.db"
        app = AppSettings(server={"database_path": str(db)})
        assert app.get_database_path() == db
        assert db.parent.exists()

    def test_results_dir_created(self, tmp_path):
        results = tmp_path / "results"
        app = AppSettings(server={"results_dir": str(results)})
        assert app.get_results_dir() == results
        assert results.is_dir()

    def test_save_excludes_api_key(self, tmp_path, monkeypatch):
        import json

        from bank_autopilot import config

        config_file = tmp_path / "config.json"
        monkeypatch.setattr(config, "CONFIG_FILE", config_file)

        app = AppSettings(llm={"api_key": "secret-key"}, schedule={"enabled": True, "cron_expression": "0 */6 * * *"})
        assert app.save() == config_file

        data = json.loads(config_file.read_text())
        assert "api_key" not in data["llm"]
        assert data["schedule"] == {"enabled": True, "cron_expression": "0 */6 * * *", "pause_between_recipes": 2.0}

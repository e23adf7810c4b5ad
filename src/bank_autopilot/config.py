"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "bank-autopilot"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/bank-autopilot)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_results_dir() -> Path:
    """Get the default directory for scraped transactions and diagnostics."""
    base = Path("~/Documents").expanduser()
    if not base.exists():
        base = Path.home()

    path = base / "bank-autopilot-results"
    return path


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except Exception:
        return {}


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


# Standard environment variable names for API keys
# For providers with multiple common env var names, use a list (first match wins)
STANDARD_ENV_VAR_NAMES: dict[str, str | list[str]] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],
    "azure_openai": "AZURE_OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

# Providers that don't require an API key
NO_KEY_PROVIDERS = frozenset({"ollama", "bedrock"})

# Vision-capable providers. "ollama" covers locally hosted multimodal models.
ProviderType = Literal[
    "openai",
    "anthropic",
    "google",
    "azure_openai",
    "ollama",
    "bedrock",
    "openrouter",
]

VisionProviderType = Literal[
    "none",
    "openai",
    "anthropic",
    "google",
    "azure_openai",
    "ollama",
    "bedrock",
    "openrouter",
]


class LLMSettings(BaseSettings):
    """LLM provider configuration used for vision extraction."""

    model_config = SettingsConfigDict(env_prefix="AUTOPILOT_LLM_")

    provider: ProviderType = Field(default="anthropic")
    model_name: str = Field(default="claude-sonnet-4-5-20250929")
    api_key: Optional[SecretStr] = Field(default=None, description="Generic API key override (highest priority)")
    base_url: Optional[str] = Field(default=None, description="Custom base URL (OpenAI-compatible APIs or Ollama host)")

    # Azure OpenAI specific
    azure_endpoint: Optional[str] = Field(default=None, description="Azure OpenAI endpoint URL")
    azure_api_version: Optional[str] = Field(default="2024-02-01", description="Azure OpenAI API version")

    # AWS Bedrock specific
    aws_region: Optional[str] = Field(default=None, description="AWS region for Bedrock")

    def get_api_key_for_provider(self, provider: str | None = None) -> Optional[str]:
        """Resolve API key with priority: generic > standard > prefixed.

        Priority order:
        1. AUTOPILOT_LLM_API_KEY (generic override, applies to any provider)
        2. <PROVIDER>_API_KEY (standard name, e.g., ANTHROPIC_API_KEY, GEMINI_API_KEY)
        3. AUTOPILOT_LLM_<PROVIDER>_API_KEY

        Returns:
            The resolved API key or None if not found.
        """
        provider = provider or self.provider

        if self.api_key:
            return self.api_key.get_secret_value()

        standard_vars = STANDARD_ENV_VAR_NAMES.get(provider)
        if standard_vars:
            if isinstance(standard_vars, str):
                standard_vars = [standard_vars]
            for var_name in standard_vars:
                key = os.environ.get(var_name)
                if key:
                    return key

        return os.environ.get(f"AUTOPILOT_LLM_{provider.upper()}_API_KEY")

    def requires_api_key(self) -> bool:
        """Check if the current provider requires an API key."""
        return self.provider not in NO_KEY_PROVIDERS


class BrowserSettings(BaseSettings):
    """Browser configuration."""

    model_config = SettingsConfigDict(env_prefix="AUTOPILOT_BROWSER_")

    headless: bool = Field(default=True)
    user_data_dir: Optional[str] = Field(
        default=None,
        description="Persistent profile directory so cookies survive between navigations and runs",
    )
    proxy_server: Optional[str] = Field(default=None, description="Proxy server URL (e.g., http://host:8080)")
    proxy_bypass: Optional[str] = Field(default=None, description="Comma-separated hosts to bypass proxy")

    def get_user_data_dir(self) -> Path:
        """Get the browser profile directory, creating if needed."""
        if self.user_data_dir:
            path = Path(self.user_data_dir).expanduser()
        else:
            path = get_config_dir() / "browser-profile"
        path.mkdir(parents=True, exist_ok=True)
        return path


class PlaybackSettings(BaseSettings):
    """Recipe playback timing and retry configuration (seconds)."""

    model_config = SettingsConfigDict(env_prefix="AUTOPILOT_PLAYBACK_")

    retry_attempts: int = Field(default=3, ge=1, description="Resolution attempts per step")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff; attempt n waits n * retry_delay")
    click_settle_delay: float = Field(default=1.5, ge=0)
    input_settle_delay: float = Field(default=0.5, ge=0)
    select_settle_delay: float = Field(default=0.5, ge=0)
    step_pause: float = Field(default=0.5, ge=0, description="Pause between consecutive steps")
    start_url_settle_delay: float = Field(default=2.0, ge=0)
    navigation_timeout: float = Field(default=15.0, gt=0, description="Upper bound on waiting for a page load")
    hydration_settle_delay: float = Field(default=2.0, ge=0, description="Extra wait after load for client rendering")


class ColumnMapping(BaseModel):
    """Per-institution column semantics for DOM extraction.

    Indices refer to the row's cells in document order. Any column left unset is
    classified by pattern matching instead.
    """

    date: Optional[int] = None
    description: Optional[int] = None
    amount: Optional[int] = None
    balance: Optional[int] = None
    category: Optional[int] = None


class ScraperSettings(BaseSettings):
    """Transaction extraction configuration."""

    model_config = SettingsConfigDict(env_prefix="AUTOPILOT_SCRAPER_")

    vision_provider: VisionProviderType = Field(default="none", description="'none' disables vision extraction")
    vision_model: Optional[str] = Field(default=None, description="Model override for vision (defaults to llm.model_name)")
    vision_timeout: float = Field(default=120.0, gt=0)
    max_screenshots: int = Field(default=6, ge=1)
    scraping_prompt: Optional[str] = Field(default=None, description="Replaces the built-in extraction prompt")
    row_limit: int = Field(default=50, ge=1, description="Rows kept when lazy loading keeps growing the table")
    scroll_pause: float = Field(default=0.6, ge=0)
    infer_categories: bool = Field(default=True)
    column_mappings: dict[str, ColumnMapping] = Field(default_factory=dict, description="Keyed by institution name")


class ScheduleSettings(BaseSettings):
    """Scheduled batch configuration."""

    model_config = SettingsConfigDict(env_prefix="AUTOPILOT_SCHEDULE_")

    enabled: bool = Field(default=False)
    cron_expression: str = Field(default="0 6 * * *")
    pause_between_recipes: float = Field(default=2.0, ge=0)


TransportType = Literal["stdio", "streamable-http", "sse"]


class ServerSettings(BaseSettings):
    """Server and storage configuration."""

    model_config = SettingsConfigDict(env_prefix="AUTOPILOT_SERVER_")

    logging_level: str = Field(default="INFO")
    transport: TransportType = Field(default="streamable-http", description="MCP transport: stdio, streamable-http, or sse")
    host: str = Field(default="127.0.0.1", description="Host for HTTP transports")
    port: int = Field(default=8484, description="Port for HTTP transports")
    results_dir: Optional[str] = Field(default=None, description="Directory for scraped transactions and diagnostics")
    database_path: Optional[str] = Field(default=None, description="SQLite database (default: ~/.config/bank-autopilot/autopilot.db)")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="AUTOPILOT_", extra="ignore")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    playback: PlaybackSettings = Field(default_factory=PlaybackSettings)
    scraper: ScraperSettings = Field(default_factory=ScraperSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def save(self) -> Path:
        """Save current configuration to file (excluding secrets)."""
        data = self.model_dump(mode="json", exclude_none=True)
        if "llm" in data and "api_key" in data["llm"]:
            del data["llm"]["api_key"]
        save_config_file(data)
        return CONFIG_FILE

    def get_results_dir(self) -> Path:
        """Get the results directory, creating if needed."""
        if self.server.results_dir:
            path = Path(self.server.results_dir).expanduser()
        else:
            path = get_default_results_dir()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_database_path(self) -> Path:
        """Get the SQLite database path for recipes and run history."""
        if self.server.database_path:
            path = Path(self.server.database_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            return path
        return get_config_dir() / "autopilot.db"


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    return AppSettings(**file_data)


settings = _load_settings()

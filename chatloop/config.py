"""Configuration management for chatloop."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.chatloop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_API_HOST = "https://api.anthropic.com"


def normalize_api_host(value: str) -> str:
    """Prefix bare hosts with https:// and drop trailing slashes."""
    cleaned = str(value or "").strip()
    if not cleaned:
        return DEFAULT_API_HOST
    if len(cleaned) > 4 and not cleaned.startswith("http"):
        cleaned = "https://" + cleaned
    return cleaned.rstrip("/")


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "anthropic"
    model: str = "claude-3-5-haiku-latest"
    temperature: float = 0.7
    max_tokens: int | None = None
    api_key: str = ""
    base_url: str = DEFAULT_API_HOST
    timeout: float = 120.0
    default_prompt: str = ""

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        return normalize_api_host(value)


class SearchToolConfig(BaseModel):
    """Search tool configuration.

    ``backend`` selects the search provider: 1 is Google Custom Search,
    2 is Exa.
    """

    backend: Literal[1, 2] = 1
    google_api_key: str = ""
    google_cx: str = ""
    google_base_url: str = "https://www.googleapis.com/customsearch/v1"
    exa_api_key: str = ""
    exa_base_url: str = "https://api.exa.ai/search"
    max_results: int = 5
    max_results_limit: int = 10
    snippet_chars: int = 500
    timeout: int = 20

    @field_validator("backend", mode="before")
    @classmethod
    def _coerce_backend(cls, value: object) -> object:
        # Environment variables and quoted YAML values arrive as strings.
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return value


class BrowseToolConfig(BaseModel):
    """Browse tool configuration."""

    backend: Literal["exa", "direct"] = "exa"
    exa_api_key: str = ""
    exa_base_url: str = "https://api.exa.ai/contents"
    max_chars: int = 2048
    max_chars_limit: int = 5000
    timeout: int = 30


class ToolsConfig(BaseModel):
    """Tools configuration."""

    use_tools: bool = True
    enabled: list[str] = ["search", "browse"]
    max_tool_calls: int = 3
    timeout: float = 30.0
    search: SearchToolConfig = Field(default_factory=SearchToolConfig)
    browse: BrowseToolConfig = Field(default_factory=BrowseToolConfig)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for chatloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CHATLOOP_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables are applied by pydantic-settings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance, used by the CLI entry point only
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config

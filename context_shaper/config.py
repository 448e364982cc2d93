"""Configuration management for Context Shaper."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from context_shaper.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.context-shaper/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model and endpoint configuration."""

    provider: str = "openrouter"
    model: str = "openai/gpt-4o-mini"
    base_url: str = ""
    api_key: str = ""
    temperature: float = 0.7
    context_length: int = 128000
    max_completion_tokens: int = 1024


class BudgetConfig(BaseModel):
    """Context budget configuration applied before every request."""

    safety_margin_pct: float = 0.1
    max_messages: int | None = 120
    max_message_chars: int = 100_000
    middle_out: bool = True
    preserve_recent: int = 6
    max_schema_chars: int = 60_000
    fallback_budget: int = 128


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Context Shaper."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SHAPER_",
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

        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config {config_path} must be a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from the default YAML location."""
        # SHAPER_* env vars fill in whatever the YAML leaves unset
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global config instance
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

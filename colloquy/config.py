"""Configuration management for Colloquy."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.colloquy/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.colloquy/conversations.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    max_context_tokens: int = 65536
    api_key: str = ""
    base_url: str = ""


class ContextConfig(BaseModel):
    """Context window budgeting."""

    buffer_fraction: float = Field(default=0.1, ge=0.0, lt=1.0)
    truncation_threshold: float = Field(default=0.9, gt=0.0, le=1.0)


class RetryConfig(BaseModel):
    """Retry/backoff policy for provider calls."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=60.0, ge=0.0)
    jitter: bool = True
    max_jitter: float = Field(default=0.3, ge=0.0)


class ToolLoopConfig(BaseModel):
    """Tool invocation loop configuration."""

    max_iterations: int = Field(default=10, ge=1)
    on_exhausted: Literal["return_last", "raise"] = "return_last"


class ToolsConfig(BaseModel):
    """Tools configuration."""

    timeout_seconds: float = Field(default=30.0, gt=0.0)


class ConversationConfig(BaseModel):
    """Conversation defaults."""

    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT


class SessionConfig(BaseModel):
    """Conversation storage configuration."""

    path: str = str(DEFAULT_DB_PATH)
    auto_save: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Colloquy."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    tool_loop: ToolLoopConfig = Field(default_factory=ToolLoopConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="COLLOQUY_",
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
    def load(cls) -> "Config":
        """Load configuration; environment variables fill what YAML leaves unset."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
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

"""
Configuration management for workflow-relay.

Handles:
- Config file loading from relay.yaml (or $RELAY_CONFIG)
- Environment variable overrides (PORT, RELAY_TRIGGER_URL)
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP server settings."""
    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: Optional[str] = None
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class StreamConfig(BaseModel):
    """Progress stream lifecycle settings."""
    timeout_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Hard limit on how long a progress stream stays open. "
                    "Workflows are long-running, so this defaults to an hour."
    )
    completion_grace_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay between a terminal event and closing the stream, "
                    "so the final frame reaches the client first."
    )
    keepalive_seconds: Optional[float] = Field(default=30.0, gt=0)


class TriggerConfig(BaseModel):
    """External automation engine webhook."""
    webhook_url: Optional[str] = None
    timeout_seconds: float = 30.0


class Config(BaseModel):
    """Main configuration model."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)


class ConfigManager:
    """Manages configuration loading and access."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config: Optional[Config] = None
        self._config_path = config_path

    @property
    def config_path(self) -> Path:
        """Get the config file path."""
        if self._config_path is None:
            self._config_path = Path(get_env_var("RELAY_CONFIG") or "relay.yaml")
        return self._config_path

    def load(self) -> Config:
        """Load configuration from file, or return defaults."""
        if self._config is not None:
            return self._config

        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
            config = Config(**data)
        else:
            config = Config()

        self._config = _apply_env_overrides(config)
        return self._config

    def save(self, config: Config) -> None:
        """Save configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)

        self._config = config

    @property
    def config(self) -> Config:
        """Get the current configuration (loads if needed)."""
        return self.load()


def _apply_env_overrides(config: Config) -> Config:
    """Environment wins over the file for deployment-specific values."""
    port = get_env_var("PORT")
    if port:
        try:
            config.server.port = int(port)
        except ValueError:
            raise ValueError(f"Environment variable PORT must be an integer, got {port!r}") from None

    webhook_url = get_env_var("RELAY_TRIGGER_URL")
    if webhook_url:
        config.trigger.webhook_url = webhook_url

    return config


def get_env_var(name: str, required: bool = False) -> Optional[str]:
    """Get an environment variable, optionally raising if missing."""
    value = os.environ.get(name)
    if required and not value:
        raise ValueError(f"Required environment variable {name} is not set")
    return value


# Global config manager instance
config_manager = ConfigManager()

"""Configuration management for subagent control."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from subagent_control.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.subagent-control/config.yaml").expanduser()
DEFAULT_STORE_TEMPLATE = "~/.subagent-control/agents/{agent_id}/sessions.db"
LOCAL_CONFIG_FILENAME = "config.yaml"


class GatewayConfig(BaseModel):
    """Execution backend (gateway) connection."""

    base_url: str = "http://127.0.0.1:18789"
    rpc_path: str = "/rpc"
    token: str = ""
    timeout_ms: int = 10_000


class SessionConfig(BaseModel):
    """Session store configuration."""

    store: str = DEFAULT_STORE_TEMPLATE
    main_key: str = "main"
    default_agent_id: str = "main"


class SubagentsConfig(BaseModel):
    """Subagent command behaviour."""

    recent_window_minutes: int = 30
    send_wait_ms: int = 30_000
    wait_grace_ms: int = 2_000
    dispatch_timeout_ms: int = 10_000
    history_default_limit: int = 20
    history_max_limit: int = 200
    send_history_limit: int = 50
    registry_path: str = ""
    archive_after_minutes: int = 60


class ExecutionQueueConfig(BaseModel):
    """Follow-up queue behavior while sessions are busy."""

    cap: int = 20
    drop: Literal["old", "new"] = "old"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for subagent control."""

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    subagents: SubagentsConfig = Field(default_factory=SubagentsConfig)
    execution_queue: ExecutionQueueConfig = Field(default_factory=ExecutionQueueConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SUBAGENTS_",
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
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolve_store_path(self, agent_id: str | None = None) -> Path:
        """Resolve the session store file for an agent id."""
        cleaned = (agent_id or "").strip() or self.session.default_agent_id
        raw = self.session.store
        if "{agent_id}" in raw:
            raw = raw.replace("{agent_id}", cleaned)
        return Path(raw).expanduser()


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

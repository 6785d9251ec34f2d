"""Configuration management with YAML support and Pydantic validation."""

import os
import socket
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """Database configuration."""

    url: str = Field(default="sqlite:///notifier.db", description="Database connection URL")
    echo: bool = Field(default=False, description="Echo SQL statements for debugging")
    busy_timeout_seconds: float = Field(
        default=5.0, gt=0, description="How long SQLite waits on a locked database"
    )


class RetryConfig(BaseModel):
    """Retry policy for failed channel sends."""

    max_retries: int = Field(default=3, ge=0, description="Retry budget per notification")
    base_delay_minutes: float = Field(default=5, gt=0, description="Delay before the first retry")
    backoff_factor: float = Field(default=2, ge=1, description="Multiplier applied per attempt")


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class DispatcherConfig(BaseModel):
    """Dispatcher (scheduler) configuration."""

    pending_interval_seconds: int = Field(default=30, gt=0, description="Interval between pending sweeps")
    retry_interval_seconds: int = Field(default=60, gt=0, description="Interval between retry sweeps")
    reap_interval_minutes: int = Field(default=60, gt=0, description="Interval between expiry reaps")
    max_workers: int = Field(default=10, ge=1, le=200, description="Concurrent channel sends per sweep")
    send_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for a single channel send")
    lease_seconds: int = Field(default=120, gt=0, description="How long a claimed notification stays leased")
    batch_size: int = Field(default=100, ge=1, description="Maximum notifications selected per sweep")
    instance_id: str = Field(default_factory=_default_instance_id, description="Lease owner identifier")
    autostart: bool = Field(default=False, description="Start the dispatcher with the API server")
    log_level: str = Field(default="INFO", description="Root log level for the CLI")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log_level is a standard logging level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level


class NotificationDefaults(BaseModel):
    """Defaults applied to newly created notifications."""

    expiry_days: int = Field(default=7, ge=1, description="Days until a notification expires")
    default_web: bool = Field(default=True, description="Enable the in-app feed by default")
    default_wechat: bool = Field(default=True, description="Enable WeChat push by default")
    default_email: bool = Field(default=False, description="Enable email by default")


class WeChatConfig(BaseModel):
    """WeChat official account configuration."""

    enabled: bool = Field(default=False, description="Enable the WeChat push channel")
    app_id: str = Field(default="", description="Official account AppID")
    app_secret: str = Field(default="", description="Official account AppSecret")
    api_base_url: str = Field(default="https://api.weixin.qq.com", description="WeChat API base URL")
    timeout_seconds: float = Field(default=10.0, gt=0)


class EmailConfig(BaseModel):
    """SMTP configuration for the email channel."""

    enabled: bool = Field(default=False, description="Enable the email channel")
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=587, gt=0, le=65535)
    username: str = Field(default="")
    password: str = Field(default="")
    use_tls: bool = Field(default=True, description="Upgrade the connection with STARTTLS")
    use_ssl: bool = Field(default=False, description="Connect with implicit TLS")
    from_address: str = Field(default="notifications@localhost")
    timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def validate_tls_mode(self) -> "EmailConfig":
        """STARTTLS and implicit TLS are mutually exclusive."""
        if self.use_tls and self.use_ssl:
            raise ValueError("use_tls and use_ssl cannot both be enabled")
        return self


class Config(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFIER_",
        env_nested_delimiter="__",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    notifications: NotificationDefaults = Field(default_factory=NotificationDefaults)
    wechat: WeChatConfig = Field(default_factory=WeChatConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to the YAML configuration file. Defaults to config.yaml in CWD.

    Returns:
        Validated Config object.
    """
    if config_path is None:
        config_path = Path("config.yaml")
    else:
        config_path = Path(config_path)

    config_data: dict[str, Any] = {}

    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
            if loaded:
                config_data = loaded

    return Config(**config_data)


# Global config instance - initialized lazily
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Config) -> None:
    """Replace the global configuration (used by the CLI after --config)."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _config
    _config = None

"""
Conduit Configuration

Type-safe settings with Pydantic, loaded from the environment
(prefix CONDUIT_) and/or a JSON file.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ConduitConfig(BaseSettings):
    """
    Main Conduit Configuration

    Environment variables are prefixed with CONDUIT_
    (e.g., CONDUIT_MAX_CONCURRENT_EXECUTIONS=20).
    """

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: Literal["json", "console"] = "json"

    # Engine
    max_concurrent_executions: int = Field(default=100, ge=1)
    internal_error_max_attempts: int = Field(default=2, ge=1)
    default_step_timeout_ms: Optional[float] = Field(default=None, gt=0)
    resume_interrupted: bool = False

    # Approvals: resolved requests kept for listing
    approval_history_size: int = Field(default=1000, ge=0)

    # Triggers
    schedule_poll_interval_seconds: float = Field(default=30.0, gt=0)

    # Persistence (None keeps executions in memory)
    store_path: Optional[Path] = None

    # Notifications
    notification_webhook_url: Optional[str] = None

    # Event bus
    event_history_size: int = Field(default=1000, ge=0)

    model_config = {
        "env_prefix": "CONDUIT_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Accept lower-case level names."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("store_path", mode="before")
    @classmethod
    def ensure_path(cls, v: Any) -> Any:
        """Ensure value is converted to Path."""
        if isinstance(v, str):
            return Path(v) if v else None
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "ConduitConfig":
        """Load configuration from a JSON file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)


# Global configuration instance (lazy loaded)
_config: Optional[ConduitConfig] = None


def get_config() -> ConduitConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = ConduitConfig()
    return _config


def set_config(config: ConduitConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None

"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .enums import StoreBackend


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class EventStoreConfig(BaseModel):
    backend: StoreBackend = StoreBackend.MEMORY
    path: str = "data/events"  # Directory for the JSONL backend
    url: str = "sqlite+aiosqlite:///data/events.db"  # SQL backend
    page_size: int = Field(default=500, ge=1)  # Rows per lazy load page


class EventBusConfig(BaseModel):
    max_retries: int = Field(default=5, ge=0)  # Retries after the first attempt
    retry_base_delay: float = Field(default=0.5, ge=0.0)  # seconds
    retry_max_delay: float = Field(default=30.0, ge=0.0)
    dead_letter_max_reprocess: int = Field(default=3, ge=1)
    history_size: int = Field(default=1000, ge=0)  # Recent events kept by get_history


class WorkflowConfig(BaseModel):
    step_timeout_seconds: float = Field(default=10.0, gt=0.0)
    retry_max_attempts: int = Field(default=3, ge=1)  # Including the first
    retry_base_delay: float = Field(default=0.2, ge=0.0)
    retry_max_delay: float = Field(default=5.0, ge=0.0)
    retry_jitter: float = Field(default=0.1, ge=0.0, le=1.0)  # Fraction of delay


class RealtimeConfig(BaseModel):
    send_timeout_seconds: float = Field(default=2.0, gt=0.0)


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"
    metrics_port: int = 9090


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level application settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    event_store: EventStoreConfig = Field(default_factory=EventStoreConfig)
    event_bus: EventBusConfig = Field(default_factory=EventBusConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "BOOKING_", "env_nested_delimiter": "__"}


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            with open(path, "rb") as f:
                data = tomli.load(f)

    if overrides:
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value

    return Settings(**data)

"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .enums import NoiseFilterLevel, PersistenceWindow, Playbook

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class ProfileConfig(BaseModel):
    tick_size: float = 10.0
    session_start: str = "00:00"  # HH:MM UTC
    session_end: str = "23:59"  # HH:MM UTC
    session_only: bool = True  # Restrict the profile to the session window
    long_term_tick_multiplier: float = 10.0

    @field_validator("tick_size")
    @classmethod
    def _positive_tick(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tick_size must be positive")
        return v

    @field_validator("session_start", "session_end")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v


class AuctionConfig(BaseModel):
    recent_candles: int = 20
    stability_ms: int = 2000
    override_confidence: float = 80.0


class OrderFlowConfig(BaseModel):
    tick_interval_ms: int = 100
    trade_window_ms: int = 1500  # Trades fed to the level analyzer each tick
    trade_buffer_size: int = 500
    flow_state_interval_ms: int = 500
    persistence_window: PersistenceWindow = PersistenceWindow.M30


class PlaybookConfig(BaseModel):
    base_group: float
    time_window_ms: int
    noise_filter: NoiseFilterLevel


DEFAULT_PLAYBOOKS: dict[Playbook, PlaybookConfig] = {
    Playbook.SCALP: PlaybookConfig(
        base_group=5, time_window_ms=5 * 60_000, noise_filter=NoiseFilterLevel.LOW,
    ),
    Playbook.INTRADAY: PlaybookConfig(
        base_group=25, time_window_ms=3_600_000, noise_filter=NoiseFilterLevel.MEDIUM,
    ),
    Playbook.SWING: PlaybookConfig(
        base_group=100, time_window_ms=14_400_000, noise_filter=NoiseFilterLevel.HIGH,
    ),
}


class GroupingConfig(BaseModel):
    tick_interval_ms: int = 200
    playbook: Playbook = Playbook.SCALP
    custom_group: float | None = None  # Overrides playbook/adaptive sizing
    adaptive: bool = True
    noise_filter: NoiseFilterLevel = NoiseFilterLevel.AUTO
    playbooks: dict[Playbook, PlaybookConfig] = Field(
        default_factory=lambda: dict(DEFAULT_PLAYBOOKS)
    )

    @field_validator("custom_group")
    @classmethod
    def _non_negative_group(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError("custom_group must be non-negative")
        return v

    @property
    def active_playbook(self) -> PlaybookConfig:
        return self.playbooks[self.playbook]


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"  # "json" or "console"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    symbol: str = "BTCUSDT"

    profile: ProfileConfig = Field(default_factory=ProfileConfig)
    auction: AuctionConfig = Field(default_factory=AuctionConfig)
    order_flow: OrderFlowConfig = Field(default_factory=OrderFlowConfig)
    grouping: GroupingConfig = Field(default_factory=GroupingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "MICROFLOW_", "env_nested_delimiter": "__"}


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
        data = _merge(data, overrides)

    return Settings(**data)


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay ``overrides`` so nested tables keep unset keys."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged

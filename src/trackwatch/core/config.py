"""Configuration loading: reads optional TOML config file."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from trackwatch.core.base import FLUSH_WINDOW_MS, RiskWeights

DEFAULT_CONFIG_PATHS = [
    Path.home() / ".config" / "trackwatch" / "config.toml",
    Path("trackwatch.toml"),
]


class MonitorConfig(BaseModel):
    """Host-level settings that are not part of the synced user settings."""

    data_dir: str | None = None
    excluded_schemes: list[str] = Field(default_factory=lambda: ["chrome://"])
    flush_window_ms: int = Field(default=FLUSH_WINDOW_MS, gt=0)
    log_level: str = "WARNING"
    risk_weights: RiskWeights | None = None  # seed used when no weights are stored


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from a TOML file.

    Searches default paths if no explicit path is given.
    Returns an empty dict if no config file is found.
    """
    paths = [path] if path is not None else DEFAULT_CONFIG_PATHS

    for p in paths:
        if p.exists():
            with open(p, "rb") as f:
                return tomllib.load(f)

    return {}


def get_monitor_config(path: Path | None = None) -> MonitorConfig:
    """Build the monitor config: config.toml, then TW_LOG_LEVEL on top."""
    config = MonitorConfig.model_validate(load_config(path))
    env_level = os.environ.get("TW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level.upper()
    return config

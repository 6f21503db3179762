"""Packaged data and runtime data directory resolution."""

from __future__ import annotations

import os
from pathlib import Path

# Static watch-lists and scoring tables shipped inside the package
DATA_DIR = Path(__file__).resolve().parent.parent / "data"

DEFAULT_STATE_DIR = Path.home() / ".local" / "share" / "trackwatch"


def get_state_dir(configured: str | None = None) -> Path:
    """Directory holding the persisted stores: TW_DATA_DIR → config → default."""
    env = os.environ.get("TW_DATA_DIR")
    if env:
        return Path(env).expanduser()
    if configured:
        return Path(configured).expanduser()
    return DEFAULT_STATE_DIR

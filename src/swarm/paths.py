"""Canonical filesystem paths for swarm configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

SWARM_DIR = Path.home() / ".agent-swarm"

CONFIG_PATH = SWARM_DIR / "config.toml"

_env_db = os.environ.get("SWARM_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else SWARM_DIR / "swarm.db"

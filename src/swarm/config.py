"""Runtime configuration for swarm.

Values come from ``~/.agent-swarm/config.toml``::

    max_retries = 3
    token_budget = 8000
    timeout_ms = 300000
    claude_cli_path = "claude"
    log_level = "info"

Environment variables override the file:

  SWARM_MAX_RETRIES: retry attempts after the first failed execution
  SWARM_TOKEN_BUDGET: context budget handed to the context assembler
  SWARM_TIMEOUT_MS: backend call timeout in milliseconds
  SWARM_CLAUDE_BIN: path to the ``claude`` executable
  SWARM_LOG_LEVEL: debug, info, warning or error
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from swarm.paths import CONFIG_PATH

log = logging.getLogger(__name__)

VALID_LOG_LEVELS = ("debug", "info", "warning", "error")

_ENV_OVERRIDES: dict[str, str] = {
    "SWARM_MAX_RETRIES": "max_retries",
    "SWARM_TOKEN_BUDGET": "token_budget",
    "SWARM_TIMEOUT_MS": "timeout_ms",
    "SWARM_CLAUDE_BIN": "claude_cli_path",
    "SWARM_LOG_LEVEL": "log_level",
}


@dataclass(frozen=True)
class SwarmConfig:
    max_retries: int = 3
    token_budget: int = 8000
    timeout_ms: int = 300_000
    claude_cli_path: str = "claude"
    log_level: str = "info"

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level.upper(), logging.INFO)


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw TOML/env value to the type of field *name*."""
    default = getattr(SwarmConfig, name)
    if isinstance(default, int):
        coerced = int(value)
        if coerced < 0:
            raise ValueError(f"{name} must be >= 0, got {coerced}")
        return coerced
    text = str(value).strip()
    if name == "log_level":
        text = text.lower()
        if text == "warn":
            text = "warning"
        if text not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(VALID_LOG_LEVELS)}")
    return text


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s, using defaults", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _apply(config: SwarmConfig, values: dict[str, Any], source: str) -> SwarmConfig:
    known = {f.name for f in fields(SwarmConfig)}
    updates: dict[str, Any] = {}
    for key, raw in values.items():
        if key not in known:
            log.debug("Ignoring unknown config key %r from %s", key, source)
            continue
        try:
            updates[key] = _coerce(key, raw)
        except (TypeError, ValueError) as exc:
            log.warning("Invalid value for %s in %s: %s", key, source, exc)
    return replace(config, **updates) if updates else config


def load_config(path: Path | None = None) -> SwarmConfig:
    """Load config with precedence: env vars > config.toml > defaults."""
    toml_path = path if path is not None else CONFIG_PATH
    config = _apply(SwarmConfig(), _read_toml_file(toml_path), str(toml_path))

    env_values = {
        attr: os.environ[env_key] for env_key, attr in _ENV_OVERRIDES.items() if env_key in os.environ
    }
    return _apply(config, env_values, "environment")

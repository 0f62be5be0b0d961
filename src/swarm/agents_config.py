"""Helpers for loading per-worker instruction overrides from TOML files.

Overrides are appended to a worker's built-in instructions. They are read
from the global ``~/.agent-swarm/agents.toml`` and then from the project's
``.agent-swarm/agents.toml``; both are merged in that order::

    [backend-agent]
    instructions = \"\"\"
    Use FastAPI for new endpoints.
    \"\"\"
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from string import Template
from typing import Any

from swarm.paths import SWARM_DIR

log = logging.getLogger(__name__)

SUPPORTED_WORKERS = (
    "database-agent",
    "backend-agent",
    "frontend-agent",
    "qa-agent",
    "devops-agent",
)

_WORKER_DESCRIPTIONS: dict[str, str] = {
    "database-agent": "Extra instructions for the database worker.",
    "backend-agent": "Extra instructions for the backend worker.",
    "frontend-agent": "Extra instructions for the frontend worker.",
    "qa-agent": "Extra instructions for the QA worker.",
    "devops-agent": "Extra instructions for the DevOps worker.",
}

_SECTION_TEMPLATE = Template(
    '''# ${description}
[${worker}]
instructions = """
${instructions}
"""
'''
)


def _normalize_worker(worker_id: str | None) -> str | None:
    """Normalize and validate a worker id."""
    if worker_id is None:
        return None
    normalized = worker_id.strip().lower()
    if normalized not in SUPPORTED_WORKERS:
        return None
    return normalized


def _global_agents_toml() -> Path:
    return SWARM_DIR / "agents.toml"


def _project_agents_toml(project_dir: str | None) -> Path | None:
    if not project_dir:
        return None
    return Path(project_dir) / ".agent-swarm" / "agents.toml"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Ignoring unreadable agents file %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _extract_worker_text(document: dict[str, Any], worker_id: str) -> str:
    """Return the instruction text for one worker from one TOML document."""
    raw = document.get(worker_id)
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, dict):
        instructions = raw.get("instructions", "")
        if isinstance(instructions, str):
            return instructions.strip()
    return ""


def load_worker_instructions(project_dir: str | None, worker_id: str) -> str:
    """Load merged override text for *worker_id* from global then project agents.toml.

    Unknown workers return an empty string.
    """
    normalized = _normalize_worker(worker_id)
    if normalized is None:
        return ""

    chunks: list[str] = []
    for path in (_global_agents_toml(), _project_agents_toml(project_dir)):
        if path is None:
            continue
        text = _extract_worker_text(_read_toml_file(path), normalized)
        if text:
            chunks.append(text)
    return "\n\n".join(chunks)


def override_sources(project_dir: str | None, worker_id: str) -> list[str]:
    """Return the agents.toml paths that carry overrides for *worker_id*."""
    normalized = _normalize_worker(worker_id)
    if normalized is None:
        return []
    sources = []
    for path in (_global_agents_toml(), _project_agents_toml(project_dir)):
        if path is not None and _extract_worker_text(_read_toml_file(path), normalized):
            sources.append(str(path))
    return sources


def build_agents_toml_scaffold(worker_id: str | None = None) -> str:
    """Return an ``agents.toml`` scaffold with one section per worker.

    Plain string-template rendering; no TOML writer is involved.
    """
    normalized = _normalize_worker(worker_id)
    if worker_id is not None and normalized is None:
        return ""
    workers = (normalized,) if normalized else SUPPORTED_WORKERS
    sections = [
        _SECTION_TEMPLATE.substitute(
            worker=selected,
            description=_WORKER_DESCRIPTIONS[selected],
            instructions=f"Add {selected} instructions here.",
        )
        for selected in workers
    ]
    return "\n".join(section.strip() + "\n" for section in sections)

"""Four-layer context assembly for worker prompts.

Layers, in the order they are trimmed back when over budget:

  historical  the 3 most recent checkpoints of the session, newest first
  working     the session's context summary, or "Goal: <goal>"
  immediate   the 5 most recent events, oldest first

The project layer (session metadata or the project path) is never trimmed.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from swarm.db import get_session, list_checkpoints, list_recent_events, parse_json_column

log = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 8000
IMMEDIATE_EVENT_LIMIT = 5
HISTORICAL_CHECKPOINT_LIMIT = 3
WORKING_BUDGET_SHARE = 0.3
ELLIPSIS = "..."


@dataclass(frozen=True)
class AgentContext:
    immediate: list[dict[str, Any]] = field(default_factory=list)
    working: str = ""
    project: str = ""
    historical: list[dict[str, Any]] = field(default_factory=list)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


def _serialize(context: AgentContext) -> str:
    return json.dumps(asdict(context), separators=(",", ":"), default=str)


def _context_tokens(context: AgentContext) -> int:
    return estimate_tokens(_serialize(context))


def get_agent_context(conn: sqlite3.Connection, session_id: str, agent_id: str) -> AgentContext:
    """Build the context a worker sees for *session_id*.

    *agent_id* is accepted for parity with the worker contract; every worker
    in a session currently shares the same view.
    """
    immediate = [
        {
            "type": event["event_type"],
            "data": parse_json_column(event["event_data"]),
            "at": event["created_at"],
        }
        for event in list_recent_events(conn, session_id, IMMEDIATE_EVENT_LIMIT)
    ]

    session = get_session(conn, session_id)
    if session is None:
        log.warning("Building context for unknown session %s (agent %s)", session_id, agent_id)
        working = "Goal: unknown"
        project = json.dumps({"path": None})
    else:
        working = session["context_summary"] or f"Goal: {session['goal']}"
        project = session["metadata"] or json.dumps({"path": session["project_path"]})

    historical = [
        {
            "name": checkpoint["checkpoint_name"],
            "snapshot": parse_json_column(checkpoint["context_snapshot"]),
            "at": checkpoint["created_at"],
        }
        for checkpoint in list_checkpoints(conn, session_id, HISTORICAL_CHECKPOINT_LIMIT)
    ]

    return AgentContext(immediate=immediate, working=working, project=project, historical=historical)


def trim_context_to_fit(
    context: AgentContext, max_tokens: int = DEFAULT_TOKEN_BUDGET
) -> AgentContext:
    """Return a copy of *context* trimmed toward *max_tokens*.

    Never raises. The result may still exceed the budget when the project
    layer, the truncated working text and one immediate event are already
    too large on their own. Trimming an already-trimmed context is a no-op.
    """
    total = _context_tokens(context)
    if total <= max_tokens:
        return context

    historical = list(context.historical)
    immediate = list(context.immediate)
    working = context.working
    trimmed = context

    while total > max_tokens and historical:
        historical.pop()
        trimmed = replace(trimmed, historical=list(historical))
        total = _context_tokens(trimmed)

    if total > max_tokens:
        max_working_chars = math.floor(max_tokens * WORKING_BUDGET_SHARE) * 4
        if len(working) > max_working_chars:
            working = working[:max_working_chars] + ELLIPSIS
            trimmed = replace(trimmed, working=working)
            total = _context_tokens(trimmed)

    while total > max_tokens and len(immediate) > 1:
        immediate.pop(0)
        trimmed = replace(trimmed, immediate=list(immediate))
        total = _context_tokens(trimmed)

    if total > max_tokens:
        log.debug("Context still over budget after trimming: %d > %d tokens", total, max_tokens)
    return trimmed


def context_to_prompt(context: AgentContext) -> str:
    """Render a context as the markdown fragment embedded in worker prompts."""
    parts = ["## Current Session", context.working]

    if context.immediate:
        parts.append("\n## Recent Activity")
        parts.extend(f"- {json.dumps(event, default=str)}" for event in context.immediate)

    if context.project:
        parts.append("\n## Project Info")
        parts.append(context.project)

    if context.historical:
        parts.append("\n## Previous Checkpoints")
        parts.extend(f"- {json.dumps(entry, default=str)}" for entry in context.historical)

    return "\n".join(parts)

"""Break a high-level goal into worker-sized tasks via the backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from jsonschema import ValidationError, validate

from swarm.backends import BackendError, JsonRunner, run_claude_json

log = logging.getLogger(__name__)

FALLBACK_ROLE = "backend"

DECOMPOSITION_SCHEMA: dict[str, Any] = {
    "type": "array",
    "minItems": 1,
    "items": {
        "type": "object",
        "required": ["goal"],
        "properties": {
            "role": {"type": "string"},
            "agent": {"type": "string"},
            "goal": {"type": "string", "pattern": "\\S"},
            "dependencies": {"type": "array"},
            "constraints": {"type": "string"},
        },
        "anyOf": [{"required": ["role"]}, {"required": ["agent"]}],
    },
}

DECOMPOSITION_PROMPT = """\
You are a task decomposition engine for a multi-agent development system.

Given a development goal, break it into subtasks assigned to specialist agents.

Available agents:
- database: Schema design, migrations, SQL, data modeling
- backend: API endpoints, services, business logic, middleware
- frontend: UI components, state management, styling
- qa: Testing, validation, coverage
- devops: CI/CD, Docker, deployment, monitoring

Goal: "{goal}"

Analyze the project at this path and decompose the goal into ordered subtasks.
Each task should specify which agent handles it (role), what the goal is, its \
priority (1=highest), and which task indexes it depends on.

Respond with a JSON array:
[
  {{ "role": "database", "goal": "Create users table with email and password_hash columns", \
"priority": 1, "dependencies": [] }},
  {{ "role": "backend", "goal": "Implement POST /api/auth/register endpoint", \
"priority": 2, "dependencies": [0] }}
]

Rules:
- Order tasks by dependency (database first, then backend, then frontend, then qa, then devops)
- Not every agent needs a task; only include what's needed
- Keep task goals specific and actionable
- Dependencies reference task array indexes (0-based)"""


@dataclass(frozen=True)
class DecomposedTask:
    role: str
    goal: str
    priority: int
    dependencies: list[int] = field(default_factory=list)
    constraints: str | None = None

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "role": self.role,
            "goal": self.goal,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
        }
        if self.constraints:
            item["constraints"] = self.constraints
        return item


def fallback_tasks(goal: str) -> list[DecomposedTask]:
    return [DecomposedTask(role=FALLBACK_ROLE, goal=goal, priority=1, dependencies=[])]


def _coerce_priority(raw: Any, position: int) -> int:
    if isinstance(raw, bool):
        return position + 1
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        try:
            return int(raw.strip())
        except ValueError:
            return position + 1
    return position + 1


def _clean_dependencies(raw: list[Any], position: int, count: int) -> list[int]:
    """Keep only in-range integer indices that point at another task."""
    cleaned: list[int] = []
    for dep in raw:
        if isinstance(dep, bool) or not isinstance(dep, int):
            log.warning("Task %d: dropping non-integer dependency %r", position, dep)
            continue
        if dep < 0 or dep >= count:
            log.warning("Task %d: dropping out-of-range dependency %d", position, dep)
            continue
        if dep == position:
            log.warning("Task %d: dropping self-dependency", position)
            continue
        if dep not in cleaned:
            cleaned.append(dep)
    return cleaned


def parse_decomposition(document: Any) -> list[DecomposedTask]:
    """Validate a decomposition document and normalize its entries.

    Raises jsonschema.ValidationError when the document is not a non-empty
    array of task objects.
    """
    validate(instance=document, schema=DECOMPOSITION_SCHEMA)
    count = len(document)
    tasks = []
    for position, entry in enumerate(document):
        role = entry.get("role") or entry.get("agent") or ""
        tasks.append(
            DecomposedTask(
                role=role.strip().lower() or FALLBACK_ROLE,
                goal=entry["goal"].strip(),
                priority=_coerce_priority(entry.get("priority"), position),
                dependencies=_clean_dependencies(entry.get("dependencies") or [], position, count),
                constraints=entry.get("constraints") or None,
            )
        )
    return tasks


def decompose_goal(
    goal: str,
    project_path: str,
    *,
    runner: JsonRunner = run_claude_json,
) -> list[DecomposedTask]:
    """Decompose *goal* into tasks, falling back to one backend task on any failure."""
    log.info("Decomposing goal: %s", goal)
    try:
        document = runner(DECOMPOSITION_PROMPT.format(goal=goal), project_path)
        tasks = parse_decomposition(document)
    except BackendError as exc:
        log.error("Task decomposition failed: %s", exc)
        return fallback_tasks(goal)
    except ValidationError as exc:
        log.error("Task decomposition returned an invalid task list: %s", exc.message)
        return fallback_tasks(goal)

    log.info("Decomposed into %d tasks", len(tasks))
    return tasks

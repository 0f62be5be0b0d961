"""Specialist workers and the execution contract they share.

A worker is a static descriptor (id, name, capability tags, instructions).
All workers run through the same ``execute_worker`` function, which turns a
task into a backend prompt and records what happened in the event log and
checkpoint store.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from swarm.agents_config import load_worker_instructions
from swarm.backends import BackendError, Runner, run_claude
from swarm.context import (
    DEFAULT_TOKEN_BUDGET,
    context_to_prompt,
    get_agent_context,
    trim_context_to_fit,
)
from swarm.db import append_event, save_checkpoint, set_agent_status

log = logging.getLogger(__name__)

PROMPT_SEPARATOR = "\n---\n"
CHECKPOINT_RESULT_CHARS = 2000
PREVIEW_CHARS = 500

_OUTPUT_INSTRUCTION = "Output your work as actual file changes in the project."


@dataclass(frozen=True)
class WorkerSpec:
    id: str
    name: str
    kind: str
    capabilities: tuple[str, ...]
    instructions: str


@dataclass(frozen=True)
class TaskInput:
    id: str
    task_type: str
    session_id: str
    goal: str
    constraints: str | None = None
    dependencies_output: str | None = None


@dataclass(frozen=True)
class TaskResult:
    success: bool
    output: str


def _instructions(specialty: str, responsibilities: list[str], rules: list[str], closing: str) -> str:
    lines = [f"You are a {specialty} Specialist Agent in a multi-agent development team.", ""]
    lines.append("Your responsibilities:")
    lines.extend(f"- {item}" for item in responsibilities)
    lines.extend(["", "Rules:"])
    lines.extend(f"- {item}" for item in rules)
    lines.extend(["", closing])
    return "\n".join(lines)


DATABASE_WORKER = WorkerSpec(
    id="database-agent",
    name="Database Agent",
    kind="specialist",
    capabilities=(
        "schema", "migrations", "sql", "database", "tables", "indexes", "queries", "data-modeling",
    ),
    instructions=_instructions(
        "Database",
        [
            "Design and create database schemas",
            "Write SQL migrations (CREATE, ALTER, DROP)",
            "Create rollback scripts for every migration",
            "Optimize queries and suggest indexes",
            "Handle data modeling and relationships",
        ],
        [
            "Always create migration files, never modify the database directly",
            "Include rollback scripts for every migration",
            "Follow the project's existing database patterns",
            "Use parameterized queries to prevent SQL injection",
            "Document schema changes",
        ],
        _OUTPUT_INSTRUCTION,
    ),
)

BACKEND_WORKER = WorkerSpec(
    id="backend-agent",
    name="Backend Agent",
    kind="specialist",
    capabilities=(
        "api", "endpoints", "services", "backend", "routes", "middleware", "business-logic",
        "validation",
    ),
    instructions=_instructions(
        "Backend",
        [
            "Create and modify API endpoints",
            "Implement service layer and business logic",
            "Add input validation and error handling",
            "Create middleware",
            "Follow RESTful conventions",
        ],
        [
            "Follow the project's existing patterns and conventions",
            "Add proper input validation on all endpoints",
            "Include error handling with appropriate HTTP status codes",
            "Keep services focused and single-responsibility",
            "Write clean, maintainable code",
        ],
        _OUTPUT_INSTRUCTION,
    ),
)

FRONTEND_WORKER = WorkerSpec(
    id="frontend-agent",
    name="Frontend Agent",
    kind="specialist",
    capabilities=(
        "ui", "components", "frontend", "react", "css", "state-management", "responsive",
        "accessibility",
    ),
    instructions=_instructions(
        "Frontend",
        [
            "Create UI components",
            "Implement state management",
            "Add responsive styling",
            "Ensure accessibility (WCAG-AA)",
            "Wire up API integrations in the frontend",
        ],
        [
            "Follow the project's existing component patterns",
            "Use the project's existing styling approach",
            "Ensure responsive design",
            "Add proper loading and error states",
            "Keep components focused and reusable",
        ],
        _OUTPUT_INSTRUCTION,
    ),
)

QA_WORKER = WorkerSpec(
    id="qa-agent",
    name="QA Agent",
    kind="specialist",
    capabilities=(
        "testing", "tests", "qa", "quality", "coverage", "integration-tests", "unit-tests",
        "validation",
    ),
    instructions=_instructions(
        "QA",
        [
            "Write unit tests for new code",
            "Write integration tests for API endpoints",
            "Validate edge cases and error scenarios",
            "Check test coverage",
            "Run existing tests to verify nothing is broken",
        ],
        [
            "Follow the project's existing test patterns and frameworks",
            "Cover happy path, error cases, and edge cases",
            "Use meaningful test descriptions",
            "Mock external dependencies appropriately",
            "Aim for high coverage on new code",
        ],
        f"{_OUTPUT_INSTRUCTION} Run tests when done.",
    ),
)

DEVOPS_WORKER = WorkerSpec(
    id="devops-agent",
    name="DevOps Agent",
    kind="specialist",
    capabilities=(
        "deployment", "ci-cd", "devops", "docker", "pipeline", "infrastructure", "monitoring",
        "environment",
    ),
    instructions=_instructions(
        "DevOps",
        [
            "Set up and modify CI/CD pipelines",
            "Create and update Docker configurations",
            "Manage environment configuration",
            "Set up monitoring and health checks",
            "Handle deployment automation",
        ],
        [
            "Follow the project's existing DevOps patterns",
            "Never hardcode secrets or credentials",
            "Use environment variables for configuration",
            "Document any new environment variables needed",
            "Ensure deployments are zero-downtime when possible",
        ],
        _OUTPUT_INSTRUCTION,
    ),
)

# Registration order matters: it breaks routing ties and picks the fallback.
WORKER_SPECS: tuple[WorkerSpec, ...] = (
    DATABASE_WORKER,
    BACKEND_WORKER,
    FRONTEND_WORKER,
    QA_WORKER,
    DEVOPS_WORKER,
)


class WorkerRegistry:
    """Ordered mapping of worker id to descriptor."""

    def __init__(self, workers: Iterable[WorkerSpec] = ()) -> None:
        self._workers: dict[str, WorkerSpec] = {}
        for worker in workers:
            self.register(worker)

    @classmethod
    def default(cls) -> WorkerRegistry:
        return cls(WORKER_SPECS)

    def register(self, worker: WorkerSpec) -> None:
        """Add or replace a worker. Replacing keeps the original position."""
        self._workers[worker.id] = worker

    def get(self, worker_id: str) -> WorkerSpec | None:
        return self._workers.get(worker_id)

    def get_by_name(self, name: str) -> WorkerSpec | None:
        lowered = name.lower()
        for worker in self._workers.values():
            if worker.name.lower() == lowered:
                return worker
        return None

    def list_workers(self) -> list[WorkerSpec]:
        return list(self._workers.values())

    def __iter__(self) -> Iterator[WorkerSpec]:
        return iter(self._workers.values())

    def __len__(self) -> int:
        return len(self._workers)


def effective_instructions(worker: WorkerSpec, project_path: str | None) -> str:
    """Built-in instructions followed by any agents.toml overrides."""
    extra = load_worker_instructions(project_path, worker.id)
    if not extra:
        return worker.instructions
    return f"{worker.instructions}\n\n{extra}"


def build_prompt(instructions: str, context_prompt: str, task: TaskInput) -> str:
    parts = [
        instructions,
        PROMPT_SEPARATOR,
        context_prompt,
        PROMPT_SEPARATOR,
        f"## Task\n{task.goal}",
        f"\n## Constraints\n{task.constraints}" if task.constraints else "",
        f"\n## Previous Step Output\n{task.dependencies_output}" if task.dependencies_output else "",
    ]
    return "\n".join(parts)


def execute_worker(
    conn: sqlite3.Connection,
    worker: WorkerSpec,
    task: TaskInput,
    project_path: str,
    *,
    runner: Runner = run_claude,
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    timeout_ms: int | None = None,
) -> TaskResult:
    """Run one attempt of *task* on *worker*.

    Any exception raised by the runner (timeouts, unstartable executable,
    a misbehaving custom runner) is reported as a failed TaskResult with
    output ``"Error: <message>"``; it never propagates to the caller.
    """
    log.info("[%s] Starting task: %s", worker.name, task.goal)
    append_event(
        conn,
        task.session_id,
        "agent.task_started",
        {"agent_id": worker.id, "agent_name": worker.name, "task_id": task.id, "goal": task.goal},
        agent_id=worker.id,
    )

    context = trim_context_to_fit(
        get_agent_context(conn, task.session_id, worker.id), token_budget
    )
    prompt = build_prompt(
        effective_instructions(worker, project_path), context_to_prompt(context), task
    )

    set_agent_status(conn, worker.id, "busy", session_id=task.session_id)
    try:
        backend_result = runner(prompt, project_path, timeout_ms=timeout_ms)
    except Exception as exc:
        log.error(
            "[%s] Task failed: %s", worker.name, exc, exc_info=not isinstance(exc, BackendError)
        )
        append_event(
            conn,
            task.session_id,
            "agent.task_failed",
            {"agent_id": worker.id, "task_id": task.id, "error": str(exc)},
            agent_id=worker.id,
        )
        return TaskResult(success=False, output=f"Error: {exc}")
    finally:
        set_agent_status(conn, worker.id, "idle")

    result = TaskResult(success=backend_result.exit_code == 0, output=backend_result.output)

    save_checkpoint(
        conn,
        task.session_id,
        worker.id,
        f"{worker.name}: {task.goal[:40]}",
        {
            "task_id": task.id,
            "goal": task.goal,
            "result": result.output[:CHECKPOINT_RESULT_CHARS],
            "success": result.success,
        },
        context_snapshot={"task_id": task.id, "goal": task.goal, "success": result.success},
    )
    append_event(
        conn,
        task.session_id,
        "agent.task_completed",
        {
            "agent_id": worker.id,
            "task_id": task.id,
            "success": result.success,
            "output_preview": result.output[:PREVIEW_CHARS],
        },
        agent_id=worker.id,
    )
    log.info("[%s] Task completed: %s", worker.name, "SUCCESS" if result.success else "FAILED")
    return result

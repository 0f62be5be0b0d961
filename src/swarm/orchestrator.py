"""Orchestration loop: goal → task graph → sequential execution → summary.

One task runs at a time. The orchestrator never opens its own database
connection; the caller owns ``conn`` and closes it.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any

from swarm.backends import JsonRunner, Runner, run_claude, run_claude_json
from swarm.config import SwarmConfig
from swarm.db import (
    TaskRow,
    append_event,
    complete_task,
    count_tasks_by_status,
    create_session,
    create_tasks_batch,
    fail_interrupted_tasks,
    fail_task,
    get_session,
    get_task,
    list_tasks,
    mark_task_running,
    parse_json_column,
    save_checkpoint,
    skip_task,
    task_goal,
    task_output,
    update_session,
    upsert_agent,
)
from swarm.decomposer import DecomposedTask, decompose_goal
from swarm.router import route_task_to_worker
from swarm.workers import (
    PREVIEW_CHARS,
    PROMPT_SEPARATOR,
    TaskInput,
    TaskResult,
    WorkerRegistry,
    WorkerSpec,
    execute_worker,
)

log = logging.getLogger(__name__)

ORCHESTRATOR_AGENT_ID = "orchestrator"
NO_AGENT_ERROR = "No agent available"
DEPENDENCY_NOT_MET = "Dependency not met"


class SessionNotFoundError(LookupError):
    """Raised when a session id does not exist."""


@dataclass(frozen=True)
class TaskOutcome:
    agent: str
    goal: str
    success: bool
    output: str
    status: str


@dataclass
class OrchestratorResult:
    session_id: str
    success: bool
    tasks_completed: int
    tasks_failed: int
    tasks_skipped: int
    total_tasks: int
    results: list[TaskOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _tally(
    session_id: str, results: list[TaskOutcome], success: bool | None = None
) -> OrchestratorResult:
    """Skipped tasks count as failed; they are also reported on their own."""
    completed = sum(1 for outcome in results if outcome.success)
    return OrchestratorResult(
        session_id=session_id,
        success=len(results) == completed if success is None else success,
        tasks_completed=completed,
        tasks_failed=len(results) - completed,
        tasks_skipped=sum(1 for outcome in results if outcome.status == "skipped"),
        total_tasks=len(results),
        results=results,
    )


class Orchestrator:
    """Drives sessions against an explicitly owned SQLite connection."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        config: SwarmConfig | None = None,
        registry: WorkerRegistry | None = None,
        runner: Runner | None = None,
        json_runner: JsonRunner | None = None,
    ) -> None:
        self.conn = conn
        self.config = config or SwarmConfig()
        self.registry = registry if registry is not None else WorkerRegistry.default()
        self.runner: Runner = runner or functools.partial(
            run_claude, cli_path=self.config.claude_cli_path
        )
        self.json_runner: JsonRunner = json_runner or functools.partial(
            run_claude_json,
            timeout_ms=self.config.timeout_ms,
            cli_path=self.config.claude_cli_path,
        )
        for worker in self.registry:
            upsert_agent(
                conn,
                agent_id=worker.id,
                name=worker.name,
                agent_type=worker.kind,
                capabilities=worker.capabilities,
            )

    # -- execution helpers --

    def _execute(self, worker: WorkerSpec, task: TaskInput, project_path: str) -> TaskResult:
        return execute_worker(
            self.conn,
            worker,
            task,
            project_path,
            runner=self.runner,
            token_budget=self.config.token_budget,
            timeout_ms=self.config.timeout_ms,
        )

    def _run_with_retries(
        self, worker: WorkerSpec, task: TaskInput, project_path: str
    ) -> tuple[TaskResult, int]:
        """Execute until the first success; return the last result and attempts made."""
        max_attempts = 1 + self.config.max_retries
        attempt = 0
        result = TaskResult(success=False, output="")
        while attempt < max_attempts:
            attempt += 1
            result = self._execute(worker, task, project_path)
            if result.success:
                break
            if attempt < max_attempts:
                log.warning(
                    "Task failed, retrying (%d/%d): %s",
                    attempt,
                    self.config.max_retries,
                    task.goal,
                )
                append_event(
                    self.conn,
                    task.session_id,
                    "task.retry",
                    {"task_id": task.id, "attempt": attempt, "error": result.output[:PREVIEW_CHARS]},
                    agent_id=worker.id,
                )
        return result, attempt

    def _skip(
        self, session_id: str, task_id: str, decomposed: DecomposedTask, unmet: list[int]
    ) -> TaskOutcome:
        log.warning("Dependencies %s not completed for task %s, skipping", unmet, task_id)
        skip_task(self.conn, task_id, f"{DEPENDENCY_NOT_MET}: {unmet}")
        append_event(
            self.conn,
            session_id,
            "task.skipped",
            {"task_id": task_id, "unmet_dependencies": unmet},
        )
        return TaskOutcome(
            agent=decomposed.role,
            goal=decomposed.goal,
            success=False,
            output=DEPENDENCY_NOT_MET,
            status="skipped",
        )

    # -- public API --

    def orchestrate(self, goal: str, project_path: str) -> OrchestratorResult:
        """Run a new session for *goal* from decomposition to finalization."""
        conn = self.conn
        session = create_session(conn, goal, project_path)
        session_id = session["id"]
        log.info("Session created: %s", session_id)
        append_event(conn, session_id, "session.started", {"goal": goal, "project_path": project_path})

        decomposed = decompose_goal(goal, project_path, runner=self.json_runner)
        append_event(
            conn,
            session_id,
            "tasks.decomposed",
            {
                "count": len(decomposed),
                "tasks": [{"role": task.role, "goal": task.goal} for task in decomposed],
            },
        )
        task_ids = create_tasks_batch(
            conn,
            session_id,
            [task.to_item() for task in decomposed],
            max_retries=self.config.max_retries,
        )

        results: list[TaskOutcome] = []
        completed_outputs: dict[int, str] = {}

        for index, (item, task_id) in enumerate(zip(decomposed, task_ids, strict=True)):
            unmet = [dep for dep in item.dependencies if dep not in completed_outputs]
            if unmet:
                results.append(self._skip(session_id, task_id, item, unmet))
                continue

            worker = route_task_to_worker(self.registry, item.role, item.goal)
            if worker is None:
                log.error("No worker found for task: %s", item.goal)
                fail_task(conn, task_id, NO_AGENT_ERROR)
                results.append(
                    TaskOutcome(item.role, item.goal, False, NO_AGENT_ERROR, "failed")
                )
                continue

            mark_task_running(conn, task_id, worker.id)
            dependency_output = PROMPT_SEPARATOR.join(
                completed_outputs[dep] for dep in item.dependencies if completed_outputs[dep]
            )
            task_input = TaskInput(
                id=task_id,
                task_type=item.role,
                session_id=session_id,
                goal=item.goal,
                constraints=item.constraints,
                dependencies_output=dependency_output or None,
            )
            result, attempts = self._run_with_retries(worker, task_input, project_path)

            if result.success:
                completed_outputs[index] = result.output
                complete_task(conn, task_id, result.output, retry_count=attempts - 1)
                status = "completed"
            else:
                fail_task(conn, task_id, result.output, retry_count=attempts)
                status = "failed"
            results.append(
                TaskOutcome(worker.id, item.goal, result.success, result.output[:PREVIEW_CHARS], status)
            )

        outcome = _tally(session_id, results)
        update_session(conn, session_id, status="completed" if outcome.success else "failed")

        save_checkpoint(
            conn,
            session_id,
            ORCHESTRATOR_AGENT_ID,
            "Session complete",
            {
                "tasks_completed": outcome.tasks_completed,
                "tasks_failed": outcome.tasks_failed,
                "tasks_skipped": outcome.tasks_skipped,
                "results": [
                    {"agent": r.agent, "goal": r.goal, "success": r.success, "status": r.status}
                    for r in results
                ],
            },
        )
        append_event(
            conn,
            session_id,
            "session.completed",
            {
                "success": outcome.success,
                "tasks_completed": outcome.tasks_completed,
                "tasks_failed": outcome.tasks_failed,
                "tasks_skipped": outcome.tasks_skipped,
            },
        )
        log.info(
            "Session %s finished: %d completed, %d failed of %d",
            session_id,
            outcome.tasks_completed,
            outcome.tasks_failed,
            outcome.total_tasks,
        )
        return outcome

    def _dependency_output(self, task: TaskRow) -> str | None:
        """Join the stored outputs of a task's completed dependencies."""
        outputs = []
        for dep_id in parse_json_column(task["dependencies"]) or []:
            dep = get_task(self.conn, dep_id)
            if dep is not None and dep["status"] == "completed":
                output = task_output(dep)
                if output:
                    outputs.append(output)
        return PROMPT_SEPARATOR.join(outputs) or None

    def resume_session(self, session_id: str) -> OrchestratorResult:
        """Re-run the pending and failed tasks of an existing session.

        Tasks run once each, in priority order, without re-checking
        dependencies. Completed and skipped tasks are left untouched. A
        session that already completed is returned as-is with zero counts.
        """
        conn = self.conn
        session = get_session(conn, session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        if session["status"] == "completed":
            log.info("Session %s already completed; nothing to resume", session_id)
            return _tally(session_id, [], True)

        update_session(conn, session_id, status="active")
        interrupted = fail_interrupted_tasks(conn, session_id)
        if interrupted:
            log.warning("Session %s: %d interrupted task(s) marked failed", session_id, interrupted)
        append_event(
            conn,
            session_id,
            "session.resumed",
            {"session_id": session_id, "interrupted_tasks": interrupted},
        )
        project_path = session["project_path"]

        results: list[TaskOutcome] = []
        for task in list_tasks(conn, session_id, statuses=("pending", "failed"), order="priority"):
            goal = task_goal(task)
            worker = route_task_to_worker(self.registry, task["task_type"], goal)
            if worker is None:
                fail_task(conn, task["id"], NO_AGENT_ERROR)
                results.append(TaskOutcome(task["task_type"], goal, False, NO_AGENT_ERROR, "failed"))
                continue

            mark_task_running(conn, task["id"], worker.id)
            input_data = parse_json_column(task["input_data"]) or {}
            task_input = TaskInput(
                id=task["id"],
                task_type=task["task_type"],
                session_id=session_id,
                goal=goal,
                constraints=input_data.get("constraints"),
                dependencies_output=self._dependency_output(task),
            )
            result = self._execute(worker, task_input, project_path)
            if result.success:
                complete_task(conn, task["id"], result.output, retry_count=task["retry_count"])
                status = "completed"
            else:
                fail_task(conn, task["id"], result.output)
                status = "failed"
            results.append(
                TaskOutcome(worker.id, goal, result.success, result.output[:PREVIEW_CHARS], status)
            )

        counts = count_tasks_by_status(conn, session_id)
        session_ok = all(status == "completed" for status in counts)
        update_session(conn, session_id, status="completed" if session_ok else "failed")

        outcome = _tally(session_id, results, session_ok)
        append_event(
            conn,
            session_id,
            "session.completed",
            {
                "success": outcome.success,
                "tasks_completed": outcome.tasks_completed,
                "tasks_failed": outcome.tasks_failed,
                "tasks_skipped": outcome.tasks_skipped,
                "resumed": True,
            },
        )
        return outcome

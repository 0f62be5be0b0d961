"""Tests for worker descriptors, prompt assembly and execute_worker."""

import json

import pytest

from _fake_backend import FakeRunner, failed, ok
from swarm.backends import BackendResult, BackendTimeoutError
from swarm.db import (
    append_event,
    list_checkpoints,
    list_events,
    list_registered_agents,
    upsert_agent,
)
from swarm.workers import (
    PROMPT_SEPARATOR,
    WORKER_SPECS,
    TaskInput,
    TaskResult,
    WorkerRegistry,
    build_prompt,
    effective_instructions,
    execute_worker,
)


def _task(session_id, goal="Add login endpoint", **kwargs):
    return TaskInput(id="task-1", task_type="backend", session_id=session_id, goal=goal, **kwargs)


@pytest.fixture()
def backend(db_conn):
    worker = WorkerRegistry.default().get("backend-agent")
    upsert_agent(
        db_conn,
        agent_id=worker.id,
        name=worker.name,
        agent_type=worker.kind,
        capabilities=worker.capabilities,
    )
    return worker


# -- registry --


def test_default_registry_order_and_ids():
    registry = WorkerRegistry.default()
    assert [w.id for w in registry] == [
        "database-agent",
        "backend-agent",
        "frontend-agent",
        "qa-agent",
        "devops-agent",
    ]
    assert len(registry) == 5
    assert all(w.kind == "specialist" for w in WORKER_SPECS)


def test_registry_lookup_by_name_is_case_insensitive():
    registry = WorkerRegistry.default()
    assert registry.get_by_name("qa agent").id == "qa-agent"
    assert registry.get_by_name("nobody") is None
    assert registry.get("nobody") is None


def test_worker_instructions_describe_specialty():
    registry = WorkerRegistry.default()
    qa = registry.get("qa-agent").instructions
    assert qa.startswith("You are a QA Specialist Agent")
    assert qa.endswith("Run tests when done.")
    assert "Never hardcode secrets or credentials" in registry.get("devops-agent").instructions


# -- prompt --


def test_build_prompt_layout(session_id):
    prompt = build_prompt("INSTRUCTIONS", "CONTEXT", _task(session_id))
    assert prompt.startswith("INSTRUCTIONS\n" + PROMPT_SEPARATOR + "\nCONTEXT")
    assert prompt.index("CONTEXT") < prompt.index("## Task\nAdd login endpoint")
    assert "## Constraints" not in prompt
    assert "## Previous Step Output" not in prompt


def test_build_prompt_includes_constraints_and_dependency_output(session_id):
    task = _task(session_id, constraints="Use JWT", dependencies_output="users table created")
    prompt = build_prompt("I", "C", task)
    assert "\n## Constraints\nUse JWT" in prompt
    assert "\n## Previous Step Output\nusers table created" in prompt
    assert prompt.index("## Constraints") < prompt.index("## Previous Step Output")


def test_effective_instructions_appends_overrides(tmp_path):
    project = tmp_path / "proj"
    (project / ".agent-swarm").mkdir(parents=True)
    (project / ".agent-swarm" / "agents.toml").write_text(
        '[backend-agent]\ninstructions = "Use FastAPI."\n'
    )
    worker = WorkerRegistry.default().get("backend-agent")
    text = effective_instructions(worker, str(project))
    assert text == worker.instructions + "\n\nUse FastAPI."
    assert effective_instructions(worker, None) == worker.instructions


# -- execute_worker --


def test_execute_worker_success_records_events_and_checkpoint(db_conn, session_id, backend):
    runner = FakeRunner({"login": [ok("wrote routes/auth.py")]})
    result = execute_worker(db_conn, backend, _task(session_id), "/tmp/proj", runner=runner)

    assert result == TaskResult(success=True, output="wrote routes/auth.py")
    assert runner.calls[0]["cwd"] == "/tmp/proj"

    events = list_events(db_conn, session_id)
    assert [e["event_type"] for e in events] == ["agent.task_started", "agent.task_completed"]
    started = json.loads(events[0]["event_data"])
    assert started == {
        "agent_id": "backend-agent",
        "agent_name": "Backend Agent",
        "task_id": "task-1",
        "goal": "Add login endpoint",
    }
    completed = json.loads(events[1]["event_data"])
    assert completed["success"] is True
    assert completed["output_preview"] == "wrote routes/auth.py"
    assert events[1]["agent_id"] == "backend-agent"

    [checkpoint] = list_checkpoints(db_conn, session_id)
    assert checkpoint["checkpoint_name"] == "Backend Agent: Add login endpoint"
    assert checkpoint["agent_id"] == "backend-agent"
    state = json.loads(checkpoint["state_data"])
    assert state == {
        "task_id": "task-1",
        "goal": "Add login endpoint",
        "result": "wrote routes/auth.py",
        "success": True,
    }
    assert json.loads(checkpoint["context_snapshot"]) == {
        "task_id": "task-1",
        "goal": "Add login endpoint",
        "success": True,
    }


def test_execute_worker_nonzero_exit_is_failed_attempt(db_conn, session_id, backend):
    runner = FakeRunner({"login": [failed("compile error")]})
    result = execute_worker(db_conn, backend, _task(session_id), "/tmp/proj", runner=runner)

    assert result == TaskResult(success=False, output="compile error")
    types = [e["event_type"] for e in list_events(db_conn, session_id)]
    assert types == ["agent.task_started", "agent.task_completed"]
    [checkpoint] = list_checkpoints(db_conn, session_id)
    assert json.loads(checkpoint["state_data"])["success"] is False


def test_execute_worker_backend_error_returns_failed_result(db_conn, session_id, backend):
    runner = FakeRunner({"login": [BackendTimeoutError("Claude CLI timed out after 10ms")]})
    result = execute_worker(db_conn, backend, _task(session_id), "/tmp/proj", runner=runner)

    assert result.success is False
    assert result.output == "Error: Claude CLI timed out after 10ms"
    events = list_events(db_conn, session_id)
    assert [e["event_type"] for e in events] == ["agent.task_started", "agent.task_failed"]
    assert json.loads(events[1]["event_data"])["error"] == "Claude CLI timed out after 10ms"
    assert list_checkpoints(db_conn, session_id) == []


def test_execute_worker_checkpoint_name_truncates_goal(db_conn, session_id, backend):
    goal = "Implement the complete user registration flow with email verification"
    execute_worker(db_conn, backend, _task(session_id, goal=goal), "/tmp", runner=FakeRunner())
    [checkpoint] = list_checkpoints(db_conn, session_id)
    assert checkpoint["checkpoint_name"] == f"Backend Agent: {goal[:40]}"


def test_execute_worker_truncates_checkpoint_result_and_preview(db_conn, session_id, backend):
    runner = FakeRunner({"login": [ok("x" * 6000)]})
    execute_worker(db_conn, backend, _task(session_id), "/tmp", runner=runner)
    [checkpoint] = list_checkpoints(db_conn, session_id)
    assert len(json.loads(checkpoint["state_data"])["result"]) == 2000
    completed = list_events(db_conn, session_id, event_type="agent.task_completed")[0]
    assert len(json.loads(completed["event_data"])["output_preview"]) == 500


def test_execute_worker_prompt_contains_recent_activity(db_conn, session_id, backend):
    append_event(db_conn, session_id, "session.started", {"goal": "Build a todo app"})
    runner = FakeRunner()
    execute_worker(db_conn, backend, _task(session_id), "/tmp", runner=runner)
    prompt = runner.calls[0]["prompt"]
    assert prompt.startswith(backend.instructions)
    assert "## Current Session\nGoal: Build a todo app" in prompt
    assert '"type": "session.started"' in prompt
    assert '"type": "agent.task_started"' in prompt
    assert prompt.rstrip().endswith("## Task\nAdd login endpoint")


def test_execute_worker_passes_timeout(db_conn, session_id, backend):
    runner = FakeRunner()
    execute_worker(db_conn, backend, _task(session_id), "/tmp", runner=runner, timeout_ms=1234)
    assert runner.calls[0]["timeout_ms"] == 1234


def test_execute_worker_marks_worker_busy_then_idle(db_conn, session_id, backend):
    seen = []

    def runner(prompt, cwd, *, timeout_ms=None):
        [row] = [r for r in list_registered_agents(db_conn) if r["id"] == "backend-agent"]
        seen.append((row["status"], row["current_session_id"]))
        return BackendResult(output="ok", exit_code=0)

    execute_worker(db_conn, backend, _task(session_id), "/tmp", runner=runner)

    assert seen == [("busy", session_id)]
    [row] = list_registered_agents(db_conn)
    assert row["status"] == "idle"
    assert row["current_session_id"] is None


def test_execute_worker_returns_idle_after_backend_error(db_conn, session_id, backend):
    runner = FakeRunner({"login": [BackendTimeoutError("slow")]})
    execute_worker(db_conn, backend, _task(session_id), "/tmp", runner=runner)
    [row] = list_registered_agents(db_conn)
    assert row["status"] == "idle"


def test_execute_worker_unexpected_runner_exception_returns_failed_result(
    db_conn, session_id, backend
):
    runner = FakeRunner({"login": [RuntimeError("runner crashed")]})
    result = execute_worker(db_conn, backend, _task(session_id), "/tmp/proj", runner=runner)

    assert result == TaskResult(success=False, output="Error: runner crashed")
    failed_event = list_events(db_conn, session_id, event_type="agent.task_failed")[0]
    assert json.loads(failed_event["event_data"])["error"] == "runner crashed"
    [row] = list_registered_agents(db_conn)
    assert row["status"] == "idle"


def test_execute_worker_undecodable_output_returns_failed_result(db_conn, session_id, backend):
    decode_error = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
    runner = FakeRunner({"login": [decode_error]})
    result = execute_worker(db_conn, backend, _task(session_id), "/tmp/proj", runner=runner)

    assert result.success is False
    assert result.output.startswith("Error: 'utf-8' codec can't decode byte 0xff")
    assert list_checkpoints(db_conn, session_id) == []

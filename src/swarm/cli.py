from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from swarm import __version__
from swarm.agents_config import build_agents_toml_scaffold, override_sources
from swarm.backends import is_claude_available
from swarm.config import SwarmConfig, load_config
from swarm.db import (
    VALID_SESSION_STATUSES,
    CheckpointRow,
    EventRow,
    SessionRow,
    TaskRow,
    connect,
    count_tasks_by_status,
    find_session_by_prefix,
    get_active_session,
    list_checkpoints,
    list_recent_events,
    list_registered_agents,
    list_sessions,
    list_tasks,
    parse_json_column,
    save_checkpoint,
)
from swarm.orchestrator import Orchestrator
from swarm.status_reference import get_status_reference
from swarm.workers import WorkerRegistry

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
MANUAL_CHECKPOINT_AGENT = "manual"
STATUS_CHECKPOINT_LIMIT = 3
SHOW_CHECKPOINT_LIMIT = 10
DEFAULT_SHOW_EVENTS = 20


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Since every
    command writes JSON to stdout, this subclass intercepts Click
    exceptions and emits a JSON error object on stdout. Unknown commands
    get fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _configure_logging(level: int) -> None:
    """Send logs to stderr; stdout is reserved for JSON."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "session": "Run 'swarm list' to see sessions.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


# -- payload shaping --


def _session_payload(session: SessionRow) -> dict[str, Any]:
    payload: dict[str, Any] = dict(session)
    payload["metadata"] = parse_json_column(session["metadata"])
    return payload


def _task_payload(task: TaskRow) -> dict[str, Any]:
    input_data = parse_json_column(task["input_data"]) or {}
    result_data = parse_json_column(task["result_data"]) or {}
    return {
        "id": task["id"],
        "role": task["task_type"],
        "goal": input_data.get("goal"),
        "constraints": input_data.get("constraints"),
        "status": task["status"],
        "priority": task["priority"],
        "agent_id": task["agent_id"],
        "dependencies": parse_json_column(task["dependencies"]) or [],
        "retry_count": task["retry_count"],
        "error": task["error_message"],
        "output": result_data.get("output"),
        "created_at": task["created_at"],
        "started_at": task["started_at"],
        "completed_at": task["completed_at"],
    }


def _event_payload(event: EventRow) -> dict[str, Any]:
    return {
        "sequence_number": event["sequence_number"],
        "type": event["event_type"],
        "agent_id": event["agent_id"],
        "data": parse_json_column(event["event_data"]),
        "created_at": event["created_at"],
    }


def _checkpoint_payload(checkpoint: CheckpointRow) -> dict[str, Any]:
    return {
        "id": checkpoint["id"],
        "name": checkpoint["checkpoint_name"],
        "agent_id": checkpoint["agent_id"],
        "sequence_number": checkpoint["sequence_number"],
        "parent_checkpoint_id": checkpoint["parent_checkpoint_id"],
        "state": parse_json_column(checkpoint["state_data"]),
        "created_at": checkpoint["created_at"],
    }


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """Coordinate specialist AI workers on a development goal.

    \b
    Quick start:
      swarm doctor                          Check prerequisites (claude CLI, database)
      swarm start "Add user signup" -p .    Decompose the goal and run every task
      swarm status                          Show the active session
      swarm resume SESSION_ID               Retry pending/failed tasks of a session

    \b
    Key concepts:
      session     One end-to-end run for a single goal
      task        One unit of work assigned to one worker
      worker      A specialist (database, backend, frontend, qa, devops)
      checkpoint  A named snapshot saved after each task
    """
    config = load_config()
    _configure_logging(logging.DEBUG if verbose else config.logging_level)
    ctx.obj = config


# -- start --


@main.command()
@click.argument("goal")
@click.option(
    "--project",
    "-p",
    "project_path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project directory (default: current directory).",
)
@click.option("--skip-check", is_flag=True, help="Skip the claude CLI availability check.")
@click.pass_obj
def start(config: SwarmConfig, goal: str, project_path: str, skip_check: bool):
    """Start a new session for GOAL and run it to completion."""
    if not goal.strip():
        raise click.ClickException("Goal must not be empty.")
    if not skip_check and not is_claude_available(config.claude_cli_path):
        raise click.ClickException(
            f"{config.claude_cli_path} is not available. "
            "Install the Claude CLI or pass --skip-check."
        )

    with connect() as conn:
        result = Orchestrator(conn, config=config).orchestrate(goal, project_path)
    _emit(result.to_dict())
    if not result.success:
        raise SystemExit(1)


# -- status --


@main.command()
def status():
    """Show the active session with its tasks and latest checkpoints."""
    with connect() as conn:
        session = get_active_session(conn)
        if session is None:
            _emit({"session": None, "message": "No active session."})
            return
        tasks = list_tasks(conn, session["id"], order="priority")
        checkpoints = list_checkpoints(conn, session["id"], STATUS_CHECKPOINT_LIMIT)

    _emit(
        {
            "session": _session_payload(session),
            "tasks": [_task_payload(task) for task in tasks],
            "checkpoints": [_checkpoint_payload(cp) for cp in checkpoints],
        }
    )


# -- list --


@main.command("list")
@click.option(
    "--status",
    "-s",
    "status_filter",
    type=click.Choice(sorted(VALID_SESSION_STATUSES)),
    default=None,
    help="Only list sessions with this status.",
)
def list_cmd(status_filter: str | None):
    """List sessions, most recently updated first."""
    with connect() as conn:
        sessions = list_sessions(conn, status_filter)
        payload = [
            {
                "id": session["id"],
                "name": session["session_name"],
                "status": session["status"],
                "goal": session["goal"],
                "project_path": session["project_path"],
                "tasks": count_tasks_by_status(conn, session["id"]),
                "started_at": session["started_at"],
                "updated_at": session["updated_at"],
                "completed_at": session["completed_at"],
            }
            for session in sessions
        ]
    _emit(payload)


# -- resume --


@main.command()
@click.argument("session_prefix")
@click.pass_obj
def resume(config: SwarmConfig, session_prefix: str):
    """Resume the session whose id starts with SESSION_PREFIX."""
    with connect() as conn:
        session = find_session_by_prefix(conn, session_prefix)
        if session is None:
            raise _not_found("session", session_prefix)
        result = Orchestrator(conn, config=config).resume_session(session["id"])
    _emit(result.to_dict())
    if not result.success:
        raise SystemExit(1)


# -- checkpoint --


@main.command()
@click.argument("name")
def checkpoint(name: str):
    """Save a manual checkpoint NAME on the active session."""
    with connect() as conn:
        session = get_active_session(conn)
        if session is None:
            raise click.ClickException("No active session.\nRun 'swarm start GOAL' first.")
        saved = save_checkpoint(
            conn,
            session["id"],
            MANUAL_CHECKPOINT_AGENT,
            name,
            {"manual": True, "timestamp": datetime.now(UTC).isoformat()},
        )
    _emit(
        {
            "checkpoint_id": saved["id"],
            "session_id": session["id"],
            "name": saved["checkpoint_name"],
            "sequence_number": saved["sequence_number"],
        }
    )


# -- show --


@main.command()
@click.argument("session_prefix")
@click.option(
    "--events",
    "event_limit",
    default=DEFAULT_SHOW_EVENTS,
    show_default=True,
    type=click.IntRange(min=0),
    help="Number of most recent events to include.",
)
def show(session_prefix: str, event_limit: int):
    """Show full detail for the session whose id starts with SESSION_PREFIX."""
    with connect() as conn:
        session = find_session_by_prefix(conn, session_prefix)
        if session is None:
            raise _not_found("session", session_prefix)
        tasks = list_tasks(conn, session["id"])
        events = list_recent_events(conn, session["id"], event_limit)
        checkpoints = list_checkpoints(conn, session["id"], SHOW_CHECKPOINT_LIMIT)

    _emit(
        {
            "session": _session_payload(session),
            "tasks": [_task_payload(task) for task in tasks],
            "events": [_event_payload(event) for event in events],
            "checkpoints": [_checkpoint_payload(cp) for cp in checkpoints],
        }
    )


# -- agents --


@main.command()
@click.option(
    "--project",
    "-p",
    "project_path",
    default=".",
    type=click.Path(file_okay=False, resolve_path=True),
    help="Project whose .agent-swarm/agents.toml overrides are reported.",
)
@click.option("--scaffold", is_flag=True, help="Print an agents.toml scaffold instead.")
def agents(project_path: str, scaffold: bool):
    """List workers, their capabilities and instruction overrides."""
    if scaffold:
        click.echo(build_agents_toml_scaffold(), nl=False)
        return

    with connect() as conn:
        registered = {row["id"]: row for row in list_registered_agents(conn)}

    payload = []
    for worker in WorkerRegistry.default():
        row = registered.get(worker.id)
        payload.append(
            {
                "id": worker.id,
                "name": worker.name,
                "kind": worker.kind,
                "capabilities": list(worker.capabilities),
                "status": row["status"] if row else None,
                "last_heartbeat": row["last_heartbeat"] if row else None,
                "overrides": override_sources(str(Path(project_path)), worker.id),
            }
        )
    _emit(payload)


# -- help-status --


@main.command("help-status")
def help_status():
    """Show canonical status lifecycle definitions for sessions, tasks, and workers."""
    _emit(get_status_reference())


# -- doctor --


@main.command()
@click.pass_obj
def doctor(config: SwarmConfig):
    """Run health checks on swarm prerequisites."""
    from swarm.doctor import run_doctor

    report = run_doctor(cli_path=config.claude_cli_path)
    click.echo(json.dumps(report))
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")

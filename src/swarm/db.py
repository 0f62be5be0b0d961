"""SQLite database for swarm state."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, cast

from swarm.paths import DEFAULT_DB_PATH

VALID_SESSION_STATUSES = {"active", "paused", "completed", "failed"}
SESSION_TERMINAL_STATUSES = {"completed", "failed"}
# Re-finalizing a finished session is allowed (last write wins).
SESSION_TRANSITIONS: dict[str, set[str]] = {
    "active": {"active", "completed", "failed", "paused"},
    "paused": {"paused", "active"},
    "completed": {"completed", "failed"},
    "failed": {"failed", "completed", "active"},
}
VALID_TASK_STATUSES = {"pending", "running", "completed", "failed", "skipped"}
TASK_RUNNABLE_STATUSES = ("pending", "failed")
VALID_AGENT_STATUSES = {"idle", "busy"}

DEFAULT_COORDINATION_MODEL = "hub_spoke"

MAX_ERROR_CHARS = 1000
MAX_RESULT_CHARS = 5000


def _utcnow() -> str:
    """ISO 8601 UTC timestamp with millisecond precision."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


# Bump when adding migrations. 0 = fresh database.
SCHEMA_VERSION = 2

SCHEMA = """\
CREATE TABLE IF NOT EXISTS work_sessions (
    id TEXT PRIMARY KEY,
    session_name TEXT NOT NULL,
    project_path TEXT NOT NULL,
    goal TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    coordination_model TEXT NOT NULL DEFAULT 'hub_spoke',
    context_summary TEXT,
    metadata TEXT,
    started_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS agent_registry (
    id TEXT PRIMARY KEY,
    agent_name TEXT NOT NULL,
    agent_type TEXT NOT NULL,
    capabilities TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    current_session_id TEXT,
    last_heartbeat TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS checkpoints (
    id TEXT PRIMARY KEY,
    checkpoint_name TEXT NOT NULL,
    session_id TEXT NOT NULL REFERENCES work_sessions(id),
    agent_id TEXT NOT NULL,
    state_data TEXT NOT NULL,
    context_snapshot TEXT,
    sequence_number INTEGER NOT NULL,
    parent_checkpoint_id TEXT REFERENCES checkpoints(id),
    created_at TEXT NOT NULL,
    UNIQUE(session_id, sequence_number)
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    session_id TEXT NOT NULL REFERENCES work_sessions(id),
    agent_id TEXT,
    sequence_number INTEGER NOT NULL,
    event_data TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(session_id, sequence_number)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    task_type TEXT NOT NULL,
    session_id TEXT NOT NULL REFERENCES work_sessions(id),
    agent_id TEXT,
    parent_task_id TEXT REFERENCES tasks(id),
    ordinal INTEGER NOT NULL DEFAULT 0,
    priority INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    input_data TEXT NOT NULL,
    result_data TEXT,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    dependencies TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS context_invalidations (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    invalidation_type TEXT NOT NULL,
    affected_scope TEXT NOT NULL,
    invalidated_at TEXT NOT NULL,
    acknowledged_by TEXT NOT NULL DEFAULT '[]'
);
"""


# -- Row TypedDicts matching table schemas --


class SessionRow(TypedDict):
    id: str
    session_name: str
    project_path: str
    goal: str
    status: str
    coordination_model: str
    context_summary: str | None
    metadata: str | None
    started_at: str
    updated_at: str
    completed_at: str | None


class TaskRow(TypedDict):
    id: str
    task_type: str
    session_id: str
    agent_id: str | None
    parent_task_id: str | None
    ordinal: int
    priority: int
    status: str
    input_data: str
    result_data: str | None
    error_message: str | None
    retry_count: int
    max_retries: int
    dependencies: str
    created_at: str
    started_at: str | None
    completed_at: str | None


class EventRow(TypedDict):
    id: str
    event_type: str
    session_id: str
    agent_id: str | None
    sequence_number: int
    event_data: str
    metadata: str | None
    created_at: str


class CheckpointRow(TypedDict):
    id: str
    checkpoint_name: str
    session_id: str
    agent_id: str
    state_data: str
    context_snapshot: str | None
    sequence_number: int
    parent_checkpoint_id: str | None
    created_at: str


class AgentRegistryRow(TypedDict):
    id: str
    agent_name: str
    agent_type: str
    capabilities: str
    status: str
    current_session_id: str | None
    last_heartbeat: str | None
    metadata: str | None
    created_at: str


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Pre-v1 databases predate the ordinal column on tasks."""
    cols = _table_columns(conn, "tasks")
    _add_column_if_missing(conn, "tasks", "ordinal", "INTEGER NOT NULL DEFAULT 0", cols)


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """v1 declared agent_registry.agent_name UNIQUE; rebuild the table without it."""
    unique_on_name = any(
        index["unique"]
        and [col["name"] for col in conn.execute(f"PRAGMA index_info('{index['name']}')")]
        == ["agent_name"]
        for index in conn.execute("PRAGMA index_list(agent_registry)").fetchall()
    )
    if not unique_on_name:
        return
    conn.executescript("""
        ALTER TABLE agent_registry RENAME TO agent_registry_v1;
        CREATE TABLE agent_registry (
            id TEXT PRIMARY KEY,
            agent_name TEXT NOT NULL,
            agent_type TEXT NOT NULL,
            capabilities TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'idle',
            current_session_id TEXT,
            last_heartbeat TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL
        );
        INSERT INTO agent_registry
            SELECT id, agent_name, agent_type, capabilities, status,
                   current_session_id, last_heartbeat, metadata, created_at
            FROM agent_registry_v1;
        DROP TABLE agent_registry_v1;
    """)


_MIGRATIONS = {
    1: _migrate_to_v1,
    2: _migrate_to_v2,
}


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    for version in range(from_version + 1, SCHEMA_VERSION + 1):
        step = _MIGRATIONS.get(version)
        if step is not None:
            step(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_checkpoints_session
            ON checkpoints(session_id, sequence_number DESC);
        CREATE INDEX IF NOT EXISTS idx_checkpoints_agent
            ON checkpoints(session_id, agent_id, sequence_number DESC);
        CREATE INDEX IF NOT EXISTS idx_events_session
            ON events(session_id, sequence_number);
        CREATE INDEX IF NOT EXISTS idx_tasks_session
            ON tasks(session_id, status, priority);
        CREATE INDEX IF NOT EXISTS idx_tasks_agent
            ON tasks(agent_id, status);
        CREATE INDEX IF NOT EXISTS idx_sessions_status
            ON work_sessions(status, updated_at DESC);
        CREATE INDEX IF NOT EXISTS idx_invalidations_session
            ON context_invalidations(session_id, invalidated_at DESC);
    """)


def inspect_sqlite_integrity(conn: sqlite3.Connection) -> dict:
    """Run PRAGMA integrity_check and normalize output for diagnostics.

    Returns:
      {
        "ok": bool,                # True only when every non-empty row is "ok"
        "rows": list[str],         # normalized raw rows
        "failures": list[str],     # non-ok rows suitable for surfacing
      }
    """
    rows = conn.execute("PRAGMA integrity_check").fetchall()
    normalized: list[str] = []
    for row in rows:
        text = str(row[0]).strip() if row and row[0] is not None else ""
        if text:
            normalized.append(text)

    if not normalized:
        return {
            "ok": False,
            "rows": [],
            "failures": ["integrity_check returned no rows"],
        }

    failures = [row for row in normalized if row.lower() != "ok"]
    return {"ok": not failures, "rows": normalized, "failures": failures}


def parse_json_column(value: object | None) -> Any:
    """Decode a JSON text column, returning None for NULL or malformed text."""
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


def _dump_optional(value: object | None) -> str | None:
    return None if value is None else json.dumps(value)


# -- sessions --


_UNSET: Any = object()


def create_session(
    conn: sqlite3.Connection,
    goal: str,
    project_path: str,
    name: str | None = None,
) -> SessionRow:
    """Create a new work session with status 'active'."""
    session_id = uuid.uuid4().hex
    now = _utcnow()
    session: SessionRow = {
        "id": session_id,
        "session_name": name or goal[:60],
        "project_path": project_path,
        "goal": goal,
        "status": "active",
        "coordination_model": DEFAULT_COORDINATION_MODEL,
        "context_summary": None,
        "metadata": None,
        "started_at": now,
        "updated_at": now,
        "completed_at": None,
    }
    conn.execute(
        "INSERT INTO work_sessions "
        "(id, session_name, project_path, goal, status, coordination_model, "
        "context_summary, metadata, started_at, updated_at, completed_at) "
        "VALUES (:id, :session_name, :project_path, :goal, :status, :coordination_model, "
        ":context_summary, :metadata, :started_at, :updated_at, :completed_at)",
        session,
    )
    conn.commit()
    return session


def get_session(conn: sqlite3.Connection, session_id: str) -> SessionRow | None:
    """Lookup a session by ID."""
    row = conn.execute("SELECT * FROM work_sessions WHERE id = ?", (session_id,)).fetchone()
    return cast(SessionRow, dict(row)) if row else None


def find_session_by_prefix(conn: sqlite3.Connection, prefix: str) -> SessionRow | None:
    """Return the most recently updated session whose id starts with *prefix*."""
    prefix = prefix.strip()
    if not prefix:
        return None
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    row = conn.execute(
        "SELECT * FROM work_sessions WHERE id LIKE ? ESCAPE '\\' "
        "ORDER BY updated_at DESC, rowid DESC LIMIT 1",
        (f"{escaped}%",),
    ).fetchone()
    return cast(SessionRow, dict(row)) if row else None


def get_active_session(conn: sqlite3.Connection) -> SessionRow | None:
    """Return the most recently updated session with status 'active'."""
    row = conn.execute(
        "SELECT * FROM work_sessions WHERE status = 'active' "
        "ORDER BY updated_at DESC, rowid DESC LIMIT 1"
    ).fetchone()
    return cast(SessionRow, dict(row)) if row else None


def list_sessions(conn: sqlite3.Connection, status: str | None = None) -> list[SessionRow]:
    """List sessions by recency, optionally filtered by status."""
    query = "SELECT * FROM work_sessions"
    params: list[str] = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY updated_at DESC, rowid DESC"
    rows = conn.execute(query, params).fetchall()
    return [cast(SessionRow, dict(row)) for row in rows]


def update_session(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    status: str = _UNSET,
    context_summary: str | None = _UNSET,
    metadata: str | None = _UNSET,
) -> None:
    """Partially update a session. Always stamps updated_at.

    Setting status to 'completed' or 'failed' also stamps completed_at.
    Status changes must follow SESSION_TRANSITIONS; anything else raises
    ValueError. Unknown session ids are a silent no-op; check with get_session().
    """
    now = _utcnow()
    sets = ["updated_at = ?"]
    values: list[object] = [now]

    if status is not _UNSET:
        if status not in VALID_SESSION_STATUSES:
            raise ValueError(
                f"Invalid session status '{status}'. "
                f"Must be one of: {sorted(VALID_SESSION_STATUSES)}"
            )
        row = conn.execute(
            "SELECT status FROM work_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is not None and status not in SESSION_TRANSITIONS[row["status"]]:
            raise ValueError(
                f"Illegal session transition '{row['status']}' -> '{status}'. "
                f"Allowed: {sorted(SESSION_TRANSITIONS[row['status']])}"
            )
        sets.append("status = ?")
        values.append(status)
        if status in SESSION_TERMINAL_STATUSES:
            sets.append("completed_at = ?")
            values.append(now)
    if context_summary is not _UNSET:
        sets.append("context_summary = ?")
        values.append(context_summary)
    if metadata is not _UNSET:
        sets.append("metadata = ?")
        values.append(metadata)

    values.append(session_id)
    conn.execute(f"UPDATE work_sessions SET {', '.join(sets)} WHERE id = ?", values)
    conn.commit()


# -- tasks --


def create_tasks_batch(
    conn: sqlite3.Connection,
    session_id: str,
    items: Sequence[Mapping[str, Any]],
    *,
    max_retries: int = 3,
) -> list[str]:
    """Insert one pending task per decomposed item, in order.

    Each item carries ``role``, ``goal``, ``priority``, ``dependencies``
    (indices into *items*) and optionally ``constraints``. Indices are
    resolved to the ids created by this call; index *i* maps to the
    *i*-th returned id.
    """
    task_ids = [uuid.uuid4().hex for _ in items]
    now = _utcnow()
    for ordinal, item in enumerate(items):
        dependency_ids = [
            task_ids[idx]
            for idx in item.get("dependencies", [])
            if isinstance(idx, int) and 0 <= idx < len(task_ids)
        ]
        input_data: dict[str, Any] = {"goal": item["goal"], "ordinal": ordinal}
        if item.get("constraints"):
            input_data["constraints"] = item["constraints"]
        conn.execute(
            "INSERT INTO tasks "
            "(id, task_type, session_id, ordinal, priority, status, input_data, "
            "max_retries, dependencies, created_at) "
            "VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)",
            (
                task_ids[ordinal],
                item["role"],
                session_id,
                ordinal,
                int(item.get("priority", ordinal + 1)),
                json.dumps(input_data),
                max_retries,
                json.dumps(dependency_ids),
                now,
            ),
        )
    conn.commit()
    return task_ids


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    session_id: str,
    statuses: Sequence[str] | None = None,
    *,
    order: str = "ordinal",
) -> list[TaskRow]:
    """List a session's tasks in decomposition order or by priority."""
    query = "SELECT * FROM tasks WHERE session_id = ?"
    params: list[str] = [session_id]
    if statuses:
        placeholders = ",".join("?" for _ in statuses)
        query += f" AND status IN ({placeholders})"
        params.extend(statuses)
    if order == "priority":
        query += " ORDER BY priority ASC, ordinal ASC"
    elif order == "ordinal":
        query += " ORDER BY ordinal ASC"
    else:
        raise ValueError(f"Invalid task order '{order}'. Must be 'ordinal' or 'priority'")
    rows = conn.execute(query, params).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def count_tasks_by_status(conn: sqlite3.Connection, session_id: str) -> dict[str, int]:
    rows = conn.execute(
        "SELECT status, COUNT(*) AS cnt FROM tasks WHERE session_id = ? GROUP BY status",
        (session_id,),
    ).fetchall()
    return {row["status"]: row["cnt"] for row in rows}


def task_goal(task: TaskRow) -> str:
    """Return the goal text stored in a task's input payload."""
    data = parse_json_column(task["input_data"])
    if isinstance(data, dict):
        return str(data.get("goal", ""))
    return ""


def task_output(task: TaskRow) -> str | None:
    """Return the stored output of a completed task, if any."""
    data = parse_json_column(task["result_data"])
    if isinstance(data, dict) and isinstance(data.get("output"), str):
        return data["output"]
    return None


def mark_task_running(conn: sqlite3.Connection, task_id: str, agent_id: str) -> bool:
    """Move a pending/failed task to running and record the assigned agent."""
    placeholders = ",".join("?" for _ in TASK_RUNNABLE_STATUSES)
    cursor = conn.execute(
        "UPDATE tasks SET status = 'running', agent_id = ?, started_at = ? "
        f"WHERE id = ? AND status IN ({placeholders})",
        (agent_id, _utcnow(), task_id, *TASK_RUNNABLE_STATUSES),
    )
    conn.commit()
    return cursor.rowcount > 0


def complete_task(
    conn: sqlite3.Connection, task_id: str, output: str, *, retry_count: int = 0
) -> None:
    """Store a successful result. Clears any error left by earlier attempts."""
    conn.execute(
        "UPDATE tasks SET status = 'completed', result_data = ?, error_message = NULL, "
        "retry_count = ?, completed_at = ? WHERE id = ?",
        (json.dumps({"output": output[:MAX_RESULT_CHARS]}), retry_count, _utcnow(), task_id),
    )
    conn.commit()


def fail_task(
    conn: sqlite3.Connection,
    task_id: str,
    error: str,
    *,
    retry_count: int | None = None,
) -> None:
    if retry_count is None:
        conn.execute(
            "UPDATE tasks SET status = 'failed', error_message = ? WHERE id = ?",
            (error[:MAX_ERROR_CHARS], task_id),
        )
    else:
        conn.execute(
            "UPDATE tasks SET status = 'failed', error_message = ?, retry_count = ? WHERE id = ?",
            (error[:MAX_ERROR_CHARS], retry_count, task_id),
        )
    conn.commit()


def fail_interrupted_tasks(conn: sqlite3.Connection, session_id: str) -> int:
    """Mark tasks left in 'running' by a dead process as failed. Returns the count."""
    cursor = conn.execute(
        "UPDATE tasks SET status = 'failed', error_message = 'Interrupted before completion' "
        "WHERE session_id = ? AND status = 'running'",
        (session_id,),
    )
    conn.commit()
    return cursor.rowcount


def skip_task(conn: sqlite3.Connection, task_id: str, reason: str) -> None:
    conn.execute(
        "UPDATE tasks SET status = 'skipped', error_message = ? WHERE id = ?",
        (reason[:MAX_ERROR_CHARS], task_id),
    )
    conn.commit()


# -- event log --


def append_event(
    conn: sqlite3.Connection,
    session_id: str,
    event_type: str,
    data: Mapping[str, Any],
    *,
    agent_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> EventRow:
    """Append an immutable event to a session's history.

    The sequence number is computed inside the INSERT statement itself,
    so allocation and insertion happen at one serialization point.
    """
    event_id = uuid.uuid4().hex
    conn.execute(
        "INSERT INTO events "
        "(id, event_type, session_id, agent_id, sequence_number, event_data, metadata, "
        "created_at) "
        "SELECT ?, ?, ?, ?, COALESCE(MAX(sequence_number), 0) + 1, ?, ?, ? "
        "FROM events WHERE session_id = ?",
        (
            event_id,
            event_type,
            session_id,
            agent_id,
            json.dumps(dict(data)),
            _dump_optional(dict(metadata) if metadata is not None else None),
            _utcnow(),
            session_id,
        ),
    )
    row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
    conn.commit()
    return cast(EventRow, dict(row))


def list_events(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    event_type: str | None = None,
    after_seq: int | None = None,
    limit: int | None = None,
) -> list[EventRow]:
    """Return a session's events in sequence order."""
    query = "SELECT * FROM events WHERE session_id = ?"
    params: list[object] = [session_id]
    if event_type is not None:
        query += " AND event_type = ?"
        params.append(event_type)
    if after_seq is not None:
        query += " AND sequence_number > ?"
        params.append(after_seq)
    query += " ORDER BY sequence_number ASC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    rows = conn.execute(query, params).fetchall()
    return [cast(EventRow, dict(row)) for row in rows]


def list_recent_events(conn: sqlite3.Connection, session_id: str, limit: int) -> list[EventRow]:
    """Return the *limit* most recent events, oldest first."""
    rows = conn.execute(
        "SELECT * FROM events WHERE session_id = ? ORDER BY sequence_number DESC LIMIT ?",
        (session_id, limit),
    ).fetchall()
    return [cast(EventRow, dict(row)) for row in reversed(rows)]


def count_events(conn: sqlite3.Connection, session_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS cnt FROM events WHERE session_id = ?", (session_id,)
    ).fetchone()
    return int(row["cnt"])


# -- checkpoint store --


def save_checkpoint(
    conn: sqlite3.Connection,
    session_id: str,
    agent_id: str,
    name: str,
    state: Mapping[str, Any],
    context_snapshot: Mapping[str, Any] | None = None,
) -> CheckpointRow:
    """Save a named snapshot, chained to the agent's previous checkpoint."""
    checkpoint_id = uuid.uuid4().hex
    parent = get_latest_checkpoint(conn, session_id, agent_id)
    conn.execute(
        "INSERT INTO checkpoints "
        "(id, checkpoint_name, session_id, agent_id, state_data, context_snapshot, "
        "sequence_number, parent_checkpoint_id, created_at) "
        "SELECT ?, ?, ?, ?, ?, ?, COALESCE(MAX(sequence_number), 0) + 1, ?, ? "
        "FROM checkpoints WHERE session_id = ?",
        (
            checkpoint_id,
            name,
            session_id,
            agent_id,
            json.dumps(dict(state)),
            _dump_optional(dict(context_snapshot) if context_snapshot is not None else None),
            parent["id"] if parent else None,
            _utcnow(),
            session_id,
        ),
    )
    row = conn.execute("SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
    conn.commit()
    return cast(CheckpointRow, dict(row))


def load_checkpoint(conn: sqlite3.Connection, checkpoint_id: str) -> CheckpointRow | None:
    row = conn.execute("SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
    return cast(CheckpointRow, dict(row)) if row else None


def get_latest_checkpoint(
    conn: sqlite3.Connection, session_id: str, agent_id: str | None = None
) -> CheckpointRow | None:
    if agent_id is not None:
        row = conn.execute(
            "SELECT * FROM checkpoints WHERE session_id = ? AND agent_id = ? "
            "ORDER BY sequence_number DESC LIMIT 1",
            (session_id, agent_id),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM checkpoints WHERE session_id = ? ORDER BY sequence_number DESC LIMIT 1",
            (session_id,),
        ).fetchone()
    return cast(CheckpointRow, dict(row)) if row else None


def list_checkpoints(
    conn: sqlite3.Connection, session_id: str, limit: int = 10
) -> list[CheckpointRow]:
    """Return a session's checkpoints, newest first."""
    rows = conn.execute(
        "SELECT * FROM checkpoints WHERE session_id = ? ORDER BY sequence_number DESC LIMIT ?",
        (session_id, limit),
    ).fetchall()
    return [cast(CheckpointRow, dict(row)) for row in rows]


def get_checkpoint_chain(conn: sqlite3.Connection, checkpoint_id: str) -> list[CheckpointRow]:
    """Walk parent links from *checkpoint_id* back to the agent's first checkpoint."""
    chain: list[CheckpointRow] = []
    seen: set[str] = set()
    current = load_checkpoint(conn, checkpoint_id)
    while current is not None and current["id"] not in seen:
        chain.append(current)
        seen.add(current["id"])
        parent_id = current["parent_checkpoint_id"]
        current = load_checkpoint(conn, parent_id) if parent_id else None
    return chain


# -- agent registry --


def upsert_agent(
    conn: sqlite3.Connection,
    *,
    agent_id: str,
    name: str,
    agent_type: str,
    capabilities: Sequence[str],
) -> None:
    """Register a worker descriptor, refreshing name/type/capabilities if present."""
    conn.execute(
        "INSERT INTO agent_registry (id, agent_name, agent_type, capabilities, created_at) "
        "VALUES (?, ?, ?, ?, ?) "
        "ON CONFLICT(id) DO UPDATE SET agent_name = excluded.agent_name, "
        "agent_type = excluded.agent_type, capabilities = excluded.capabilities",
        (agent_id, name, agent_type, json.dumps(list(capabilities)), _utcnow()),
    )
    conn.commit()


def set_agent_status(
    conn: sqlite3.Connection,
    agent_id: str,
    status: str,
    *,
    session_id: str | None = None,
) -> None:
    if status not in VALID_AGENT_STATUSES:
        raise ValueError(
            f"Invalid agent status '{status}'. Must be one of: {sorted(VALID_AGENT_STATUSES)}"
        )
    conn.execute(
        "UPDATE agent_registry SET status = ?, current_session_id = ?, last_heartbeat = ? "
        "WHERE id = ?",
        (status, session_id, _utcnow(), agent_id),
    )
    conn.commit()


def list_registered_agents(conn: sqlite3.Connection) -> list[AgentRegistryRow]:
    rows = conn.execute("SELECT * FROM agent_registry ORDER BY created_at, rowid").fetchall()
    return [cast(AgentRegistryRow, dict(row)) for row in rows]

"""Shared test fixtures: template DB for fast per-test isolation."""

import itertools
import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from swarm.db import create_session, get_connection


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema.

    Copying this file is much cheaper than running schema setup and
    migrations from scratch in every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def session_id(db_conn: sqlite3.Connection) -> str:
    return create_session(db_conn, "Build a todo app", "/tmp/proj")["id"]


@pytest.fixture(autouse=True)
def _isolate_user_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests away from the real ~/.agent-swarm and SWARM_* variables."""
    home = tmp_path / "home"
    monkeypatch.setattr("swarm.config.CONFIG_PATH", home / "config.toml")
    monkeypatch.setattr("swarm.agents_config.SWARM_DIR", home)
    for name in (
        "SWARM_MAX_RETRIES",
        "SWARM_TOKEN_BUDGET",
        "SWARM_TIMEOUT_MS",
        "SWARM_CLAUDE_BIN",
        "SWARM_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strictly increasing timestamps, so recency ordering is deterministic."""
    ticks = itertools.count(1)

    def _now() -> str:
        n = next(ticks)
        return f"2026-01-01T{n // 3600:02d}:{n // 60 % 60:02d}:{n % 60:02d}.000Z"

    monkeypatch.setattr("swarm.db._utcnow", _now)

"""Health checks for swarm infrastructure."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Literal, TypedDict

from swarm.backends import DEFAULT_CLI_PATH, backend_version_text
from swarm.db import DEFAULT_DB_PATH, connect, inspect_sqlite_integrity

Status = Literal["pass", "warning", "fail"]
_STATUS_RANK: dict[Status, int] = {"pass": 0, "warning": 1, "fail": 2}


class _CheckFindingRequired(TypedDict):
    status: Status
    message: str


class CheckFinding(_CheckFindingRequired, total=False):
    details: dict[str, object]


class CheckReport(TypedDict):
    name: str
    status: Status
    summary: str
    findings: list[CheckFinding]


class DoctorReport(TypedDict):
    status: Status
    summary: str
    checks: list[CheckReport]


def run_doctor(db_path: Path | None = None, *, cli_path: str | None = None) -> DoctorReport:
    """Run all health checks."""
    resolved_db_path = Path(db_path).expanduser() if db_path is not None else DEFAULT_DB_PATH
    checks = [
        _check_backend(cli_path or DEFAULT_CLI_PATH),
        _check_sqlite_integrity(resolved_db_path),
        _check_interrupted_sessions(resolved_db_path),
    ]
    return {
        "status": _worst_status([check["status"] for check in checks]),
        "summary": _report_summary(checks),
        "checks": checks,
    }


def _worst_status(statuses: list[Status]) -> Status:
    if not statuses:
        return "pass"
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def _report_summary(checks: list[CheckReport]) -> str:
    counts: dict[Status, int] = {"pass": 0, "warning": 0, "fail": 0}
    for check in checks:
        counts[check["status"]] += 1
    return f"{counts['pass']} checks passed, {counts['warning']} warnings, {counts['fail']} failed."


def _check_backend(cli_path: str) -> CheckReport:
    """Check whether the claude CLI is available on PATH."""
    version = backend_version_text(cli_path)
    if version is None:
        return {
            "name": "backend",
            "status": "fail",
            "summary": f"{cli_path} not available. Install the Claude CLI.",
            "findings": [
                {
                    "status": "fail",
                    "message": f"{cli_path} not found on PATH or --version failed",
                    "details": {"backend": cli_path},
                }
            ],
        }
    return {
        "name": "backend",
        "status": "pass",
        "summary": "Backend available.",
        "findings": [
            {
                "status": "pass",
                "message": f"{cli_path}: {version}",
                "details": {"backend": cli_path, "version": version},
            }
        ],
    }


def _check_sqlite_integrity(db_path: Path) -> CheckReport:
    try:
        with connect(db_path) as conn:
            integrity = inspect_sqlite_integrity(conn)
    except (sqlite3.Error, OSError) as exc:
        return {
            "name": "sqlite",
            "status": "fail",
            "summary": "SQLite is unavailable.",
            "findings": [
                {
                    "status": "fail",
                    "message": f"Failed to open database {db_path}: {exc}",
                }
            ],
        }

    if integrity["ok"]:
        return {
            "name": "sqlite",
            "status": "pass",
            "summary": "SQLite integrity check passed.",
            "findings": [
                {
                    "status": "pass",
                    "message": f"Database integrity is OK: {db_path}",
                }
            ],
        }

    failures = integrity["failures"]
    return {
        "name": "sqlite",
        "status": "fail",
        "summary": f"SQLite integrity check failed with {len(failures)} issue(s).",
        "findings": [
            {"status": "fail", "message": message, "details": {"database": str(db_path)}}
            for message in failures
        ],
    }


def _check_interrupted_sessions(db_path: Path) -> CheckReport:
    """Warn about active sessions with tasks left in running or pending."""
    try:
        with connect(db_path) as conn:
            rows = conn.execute(
                "SELECT s.id, s.session_name, s.updated_at, "
                "SUM(CASE WHEN t.status = 'running' THEN 1 ELSE 0 END) AS running, "
                "SUM(CASE WHEN t.status = 'pending' THEN 1 ELSE 0 END) AS pending "
                "FROM work_sessions s JOIN tasks t ON t.session_id = s.id "
                "WHERE s.status = 'active' "
                "GROUP BY s.id "
                "HAVING running > 0 OR pending > 0 "
                "ORDER BY s.updated_at DESC"
            ).fetchall()
    except (sqlite3.Error, OSError) as exc:
        return {
            "name": "interrupted_sessions",
            "status": "fail",
            "summary": "Could not inspect sessions.",
            "findings": [{"status": "fail", "message": str(exc)}],
        }

    if not rows:
        return {
            "name": "interrupted_sessions",
            "status": "pass",
            "summary": "No interrupted sessions.",
            "findings": [],
        }

    findings: list[CheckFinding] = [
        {
            "status": "warning",
            "message": (
                f"Session {row['id'][:8]} ({row['session_name']}) has "
                f"{row['running']} running and {row['pending']} pending task(s); "
                f"run `swarm resume {row['id'][:8]}` if it is not in progress."
            ),
            "details": {
                "session_id": row["id"],
                "running": row["running"],
                "pending": row["pending"],
                "updated_at": row["updated_at"],
            },
        }
        for row in rows
    ]
    return {
        "name": "interrupted_sessions",
        "status": "warning",
        "summary": f"{len(rows)} active session(s) look interrupted.",
        "findings": findings,
    }

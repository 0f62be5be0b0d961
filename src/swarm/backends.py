"""Invocation of the external ``claude`` command-line backend.

Every worker turns its prompt into file changes by running::

    claude --print --output-format text <prompt>

inside the project directory. Calls are bounded by a timeout; expiry raises
BackendTimeoutError. A missing or unstartable executable raises BackendError.
A non-zero exit is NOT an exception: it comes back as a BackendResult with
``exit_code != 0`` and the worker reports it as a failed attempt.

Functions raise BackendError (a RuntimeError), never ClickException, so they
can be used from both cli.py and the orchestrator.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 300_000
AVAILABILITY_TIMEOUT_MS = 15_000
DEFAULT_CLI_PATH = "claude"

JSON_ONLY_INSTRUCTION = (
    "\n\nRespond ONLY with valid JSON. No markdown, no explanation, just the JSON object."
)
_JSON_FRAGMENT_RE = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")


class BackendError(RuntimeError):
    """The backend could not be invoked or its output could not be used."""


class BackendTimeoutError(BackendError):
    """The backend did not finish within its timeout."""


@dataclass(frozen=True)
class BackendResult:
    output: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


# (prompt, cwd, *, timeout_ms=...) -> BackendResult
Runner = Callable[..., BackendResult]
# (prompt, cwd) -> parsed JSON document
JsonRunner = Callable[..., Any]


def run_claude(
    prompt: str,
    cwd: str,
    *,
    timeout_ms: int | None = None,
    cli_path: str | None = None,
) -> BackendResult:
    """Run the backend once and return its trimmed stdout and exit code."""
    timeout = timeout_ms if timeout_ms is not None else DEFAULT_TIMEOUT_MS
    command = cli_path or DEFAULT_CLI_PATH
    args = [command, "--print", "--output-format", "text", prompt]
    log.debug("Running %s in %s (timeout %dms, prompt %d chars)", command, cwd, timeout, len(prompt))
    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout / 1000,
            env=os.environ.copy(),
        )
    except subprocess.TimeoutExpired:
        raise BackendTimeoutError(f"Claude CLI timed out after {timeout}ms") from None
    except OSError as exc:
        raise BackendError(f"Failed to start {command}: {exc}") from exc
    except ValueError as exc:
        raise BackendError(f"Failed to run {command}: {exc}") from exc

    output = (result.stdout or "").strip()
    if result.returncode != 0:
        log.warning("%s exited with code %d", command, result.returncode)
        if not output:
            output = (result.stderr or "").strip()
    return BackendResult(output=output, exit_code=result.returncode)


def extract_json(text: str) -> Any:
    """Parse *text* as JSON, falling back to the first brace/bracket span.

    Raises BackendError when neither parse succeeds.
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    match = _JSON_FRAGMENT_RE.search(text)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass
    raise BackendError(f"Failed to parse Claude response as JSON: {text[:200]}")


def run_claude_json(
    prompt: str,
    cwd: str,
    *,
    timeout_ms: int | None = None,
    cli_path: str | None = None,
) -> Any:
    """Run the backend in JSON mode and return the parsed document."""
    result = run_claude(
        prompt + JSON_ONLY_INSTRUCTION, cwd, timeout_ms=timeout_ms, cli_path=cli_path
    )
    return extract_json(result.output)


def is_claude_available(cli_path: str | None = None) -> bool:
    """Check the backend answers a trivial prompt."""
    try:
        result = run_claude(
            'Say "ok"', os.getcwd(), timeout_ms=AVAILABILITY_TIMEOUT_MS, cli_path=cli_path
        )
    except BackendError as exc:
        log.debug("Backend availability check failed: %s", exc)
        return False
    return result.success


def backend_version_text(cli_path: str | None = None) -> str | None:
    """Return the first line of ``<cli> --version``, or None if it cannot run."""
    command = cli_path or DEFAULT_CLI_PATH
    try:
        result = subprocess.run([command, "--version"], capture_output=True, timeout=10, text=True)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    output = result.stdout.strip() or result.stderr.strip()
    if not output:
        return command
    return output.splitlines()[0]

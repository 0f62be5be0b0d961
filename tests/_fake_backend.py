"""Scripted stand-ins for the claude backend used across tests."""

from __future__ import annotations

from collections.abc import Callable

from swarm.backends import BackendResult


class FakeRunner:
    """Scripted stand-in for ``run_claude``.

    ``script`` maps a goal substring to a list of outcomes consumed one per
    matching call (the last outcome repeats). Each outcome is a
    BackendResult or an exception to raise. Prompts matching no key
    succeed with ``"done: <call number>"``.
    """

    def __init__(self, script: dict[str, list[BackendResult | Exception]] | None = None):
        self.script = {key: list(values) for key, values in (script or {}).items()}
        self.calls: list[dict] = []

    def __call__(self, prompt: str, cwd: str, *, timeout_ms: int | None = None) -> BackendResult:
        self.calls.append({"prompt": prompt, "cwd": cwd, "timeout_ms": timeout_ms})
        task_section = prompt.rsplit("## Task\n", 1)[-1].split("\n", 1)[0]
        for key, outcomes in self.script.items():
            if key in task_section and outcomes:
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return BackendResult(output=f"done: {len(self.calls)}", exit_code=0)

    def goals(self) -> list[str]:
        """Goal line of every prompt, in call order."""
        return [call["prompt"].rsplit("## Task\n", 1)[-1].split("\n", 1)[0] for call in self.calls]


def ok(output: str = "ok") -> BackendResult:
    return BackendResult(output=output, exit_code=0)


def failed(output: str = "boom") -> BackendResult:
    return BackendResult(output=output, exit_code=1)


def json_runner_returning(document: object) -> Callable[..., object]:
    """Build a JSON runner that records prompts and returns (or raises) *document*."""
    prompts: list[str] = []

    def _runner(prompt: str, cwd: str, **_kwargs: object) -> object:
        prompts.append(prompt)
        if isinstance(document, Exception):
            raise document
        return document

    _runner.prompts = prompts  # type: ignore[attr-defined]
    return _runner

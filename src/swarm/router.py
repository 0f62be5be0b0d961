"""Route a decomposed task to a registered worker."""

from __future__ import annotations

import logging

from swarm.workers import WorkerRegistry, WorkerSpec

log = logging.getLogger(__name__)

ROLE_ALIASES: dict[str, str] = {
    "database": "database-agent",
    "db": "database-agent",
    "backend": "backend-agent",
    "api": "backend-agent",
    "frontend": "frontend-agent",
    "ui": "frontend-agent",
    "qa": "qa-agent",
    "test": "qa-agent",
    "devops": "devops-agent",
    "deploy": "devops-agent",
}

MIN_KEYWORD_CHARS = 4


def match_by_role(registry: WorkerRegistry, role: str) -> WorkerSpec | None:
    """Resolve *role* through the alias table, else treat it as a worker id."""
    normalized = role.strip().lower()
    return registry.get(ROLE_ALIASES.get(normalized, normalized))


def goal_keywords(goal: str) -> list[str]:
    return [word for word in goal.lower().split() if len(word) >= MIN_KEYWORD_CHARS]


def capability_score(worker: WorkerSpec, keywords: list[str]) -> int:
    """Number of the worker's capability tags that contain any keyword."""
    return sum(
        1
        for tag in worker.capabilities
        if any(keyword in tag.lower() for keyword in keywords)
    )


def match_by_capability(registry: WorkerRegistry, keywords: list[str]) -> WorkerSpec | None:
    best: WorkerSpec | None = None
    best_score = 0
    for worker in registry:
        score = capability_score(worker, keywords)
        if score > best_score:
            best, best_score = worker, score
    return best


def route_task_to_worker(registry: WorkerRegistry, role: str, goal: str) -> WorkerSpec | None:
    """Pick a worker for a task.

    Tries the role alias table, then keyword overlap between the goal and
    capability tags, then the first registered worker. Returns None only
    when the registry is empty.
    """
    worker = match_by_role(registry, role)
    if worker is not None:
        log.debug("Routed %r to %s (by role)", goal[:40], worker.name)
        return worker

    worker = match_by_capability(registry, goal_keywords(goal))
    if worker is not None:
        log.debug("Routed %r to %s (by capability)", goal[:40], worker.name)
        return worker

    workers = registry.list_workers()
    if workers:
        log.warning("No matching worker for %r, using %s", goal[:40], workers[0].name)
        return workers[0]
    return None

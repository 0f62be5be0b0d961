"""Central lifecycle status reference used by help/status reporting."""

from __future__ import annotations

from typing import Any

STATUS_REFERENCE_SCHEMA = "status_reference_v1"

SESSION_STATUS_LIFECYCLE = [
    {
        "status": "active",
        "meaning": "Session is running its task list (or was interrupted mid-run).",
        "typical_transitions": ["completed", "failed", "paused"],
    },
    {
        "status": "paused",
        "meaning": "Session was stopped on purpose and can be resumed.",
        "typical_transitions": ["active"],
    },
    {
        "status": "completed",
        "meaning": "Every task in the session completed.",
        "typical_transitions": [],
    },
    {
        "status": "failed",
        "meaning": "At least one task failed or was skipped; resume retries pending/failed tasks.",
        "typical_transitions": ["active"],
    },
]

TASK_STATUS_LIFECYCLE = [
    {
        "status": "pending",
        "meaning": "Task persisted from decomposition and waiting for its turn.",
        "typical_transitions": ["running", "skipped", "failed"],
    },
    {
        "status": "running",
        "meaning": "Task is assigned to a worker and the backend is executing it.",
        "typical_transitions": ["completed", "failed"],
    },
    {
        "status": "completed",
        "meaning": "Backend reported success; output is stored for dependent tasks.",
        "typical_transitions": [],
    },
    {
        "status": "failed",
        "meaning": "All attempts failed or no worker was available; resume retries it.",
        "typical_transitions": ["running"],
    },
    {
        "status": "skipped",
        "meaning": "A dependency did not complete, so the task never ran.",
        "typical_transitions": [],
    },
]

AGENT_STATUS_LIFECYCLE = [
    {
        "status": "idle",
        "meaning": "Worker is registered and not executing anything.",
        "typical_transitions": ["busy"],
    },
    {
        "status": "busy",
        "meaning": "Worker is waiting on a backend call for a session.",
        "typical_transitions": ["idle"],
    },
]

STATUS_LIFECYCLES = [
    {
        "type": "session",
        "label": "Session lifecycle",
        "description": "Statuses used by work sessions.",
        "statuses": SESSION_STATUS_LIFECYCLE,
    },
    {
        "type": "task",
        "label": "Task lifecycle",
        "description": "Statuses used by decomposed tasks.",
        "statuses": TASK_STATUS_LIFECYCLE,
    },
    {
        "type": "agent",
        "label": "Worker registry lifecycle",
        "description": "Statuses recorded for registered workers.",
        "statuses": AGENT_STATUS_LIFECYCLE,
    },
]


def get_status_reference() -> dict[str, Any]:
    """Return a machine-parseable lifecycle reference payload."""
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "lifecycles": [
            {
                "type": lifecycle["type"],
                "label": lifecycle["label"],
                "description": lifecycle["description"],
                "statuses": [
                    {
                        "status": status["status"],
                        "meaning": status["meaning"],
                        "typical_transitions": list(status["typical_transitions"]),
                    }
                    for status in lifecycle["statuses"]
                ],
            }
            for lifecycle in STATUS_LIFECYCLES
        ],
    }

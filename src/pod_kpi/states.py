"""Project lifecycle state normalization shared by every project view."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

DONE = "done"
IN_FLIGHT = "in_flight"
NOT_STARTED = "not_started"
CANCELLED = "cancelled"

FEATURE_STATES = (DONE, IN_FLIGHT, NOT_STARTED, CANCELLED)

_STATE_MAP = {
    "completed": DONE,
    "started": IN_FLIGHT,
    "paused": IN_FLIGHT,
    "in_progress": IN_FLIGHT,
    "inprogress": IN_FLIGHT,
    "planned": NOT_STARTED,
    "backlog": NOT_STARTED,
    "canceled": CANCELLED,
    "cancelled": CANCELLED,
}


def normalize_state(raw_state: Any) -> str:
    """Map a raw Linear project state onto done/in_flight/not_started/cancelled.

    Unrecognized values count as not_started so the project stays visible as
    pending work.
    """
    key = str(raw_state or "").strip().lower()
    return _STATE_MAP.get(key, NOT_STARTED)


def feature_stats(projects: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    stats = dict.fromkeys(FEATURE_STATES, 0)
    for project in projects:
        stats[normalize_state(project.get("state"))] += 1
    return stats

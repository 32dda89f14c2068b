"""
Cycle resolution, freeze policy and fallback-cycle selection.

Every pod has its own calendar of six cycles C1..C6. These helpers never
raise for missing calendars or cycles; they fall back to "C1" or to False.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from .config import CYCLE_KEYS, DEFAULT_FREEZE_POLICY_CYCLE, CycleCalendar, parse_timestamp

_CYCLE_KEY_RE = re.compile(r"^C([1-6])$")


def cycle_index(cycle_key: Any) -> int | None:
    """'C3' -> 3. Anything else -> None."""
    match = _CYCLE_KEY_RE.match(str(cycle_key).strip().upper())
    return int(match.group(1)) if match else None


def as_utc(moment: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken as UTC like calendar dates."""
    return parse_timestamp(moment)


def resolve_cycle(calendar: CycleCalendar | None, reference_time: datetime) -> str:
    """Return the open cycle at ``reference_time``, else the most recently closed, else C1."""
    if calendar is None:
        return "C1"
    reference_time = as_utc(reference_time)

    for key in CYCLE_KEYS:
        window = calendar.get(key)
        if window is not None and window.contains(reference_time):
            return key

    best: str | None = None
    best_end: datetime | None = None
    for key in CYCLE_KEYS:
        window = calendar.get(key)
        if window is None or window.end > reference_time:
            continue
        if best_end is None or window.end > best_end:
            best_end = window.end
            best = key

    return best or "C1"


def cycle_end(calendar: CycleCalendar | None, cycle_key: str) -> datetime | None:
    if calendar is None:
        return None
    window = calendar.get(cycle_key)
    return window.end if window else None


def is_cycle_active(calendar: CycleCalendar | None, cycle_key: str, reference_time: datetime) -> bool:
    """A cycle counts as active until its end has passed."""
    end = cycle_end(calendar, cycle_key)
    if end is None:
        return False
    return as_utc(reference_time) <= end


def freeze_moment(
    calendar: CycleCalendar | None, policy_cycle: str = DEFAULT_FREEZE_POLICY_CYCLE
) -> datetime | None:
    return cycle_end(calendar, policy_cycle)


def _freeze_boundary(
    calendar: CycleCalendar | None, cycle_key: str, policy_cycle: str
) -> datetime | None:
    idx = cycle_index(cycle_key)
    policy_idx = cycle_index(policy_cycle)
    if idx is None or policy_idx is None:
        return None
    if idx <= policy_idx:
        return freeze_moment(calendar, policy_cycle)
    return cycle_end(calendar, cycle_key)


def should_freeze_now(
    calendar: CycleCalendar | None,
    cycle_key: str,
    now: datetime,
    policy_cycle: str = DEFAULT_FREEZE_POLICY_CYCLE,
) -> bool:
    """Cycles up to the policy cycle freeze once it ends; later ones at their own end."""
    boundary = _freeze_boundary(calendar, cycle_key, policy_cycle)
    if boundary is None:
        return False
    return as_utc(now) > boundary


def should_allow_refresh_for_cycle(
    calendar: CycleCalendar | None,
    cycle_key: str,
    now: datetime,
    policy_cycle: str = DEFAULT_FREEZE_POLICY_CYCLE,
) -> bool:
    boundary = _freeze_boundary(calendar, cycle_key, policy_cycle)
    if boundary is None:
        return False
    return as_utc(now) <= boundary


def freeze_status(
    calendar: CycleCalendar | None,
    now: datetime,
    policy_cycle: str = DEFAULT_FREEZE_POLICY_CYCLE,
) -> dict[str, dict[str, bool]]:
    return {
        key: {
            "frozen": should_freeze_now(calendar, key, now, policy_cycle),
            "refreshable": should_allow_refresh_for_cycle(calendar, key, now, policy_cycle),
        }
        for key in CYCLE_KEYS
    }


def _row_value(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def committed_by_cycle(rows: Iterable[Any]) -> dict[str, int]:
    """Sum of committed items per cycle, in first-seen cycle order."""
    totals: dict[str, int] = {}
    for row in rows:
        cycle = _row_value(row, "cycle")
        totals[cycle] = totals.get(cycle, 0) + int(_row_value(row, "committed") or 0)
    return totals


def _best_of(totals: dict[str, int]) -> tuple[str, int]:
    best = "C1"
    best_sum = -1
    for cycle, total in totals.items():
        if total > best_sum:
            best, best_sum = cycle, total
    return best, best_sum


def best_cycle_by_committed(rows: Iterable[Any]) -> tuple[str, int]:
    """Cycle with the most committed items; ties go to the first seen."""
    return _best_of(committed_by_cycle(rows))


def select_fallback_cycle(rows: Iterable[Any], current_cycle: str) -> str | None:
    """Pick a populated cycle to report when the current one has no commitments."""
    totals = committed_by_cycle(rows)
    if totals.get(current_cycle, 0) != 0:
        return None
    best, best_sum = _best_of(totals)
    if best_sum > 0 and best != current_cycle:
        return best
    return None

"""
Label-set classification of DEL work items.

Raw issues from Linear carry their labels as ``{"labels": {"nodes": [...]}}``.
Each fetch is turned into LabeledWorkItem objects once so membership checks
against the baseline and cancelled labels are set lookups.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .config import parse_timestamp

COMPLETED_STATE_TYPE = "completed"

_DEL_PREFIX_RE = re.compile(r"^\[DEL\]\s*", re.IGNORECASE)


@dataclass(frozen=True)
class LabeledWorkItem:
    raw: dict[str, Any]
    labels: tuple[dict[str, str], ...] = ()
    label_set: frozenset[str] = field(default_factory=frozenset)
    completed_at: datetime | None = None
    state_type: str = ""

    @property
    def id(self) -> str | None:
        return self.raw.get("id")

    @property
    def identifier(self) -> str | None:
        return self.raw.get("identifier") or self.raw.get("id")

    @property
    def label_names(self) -> list[str]:
        return [label["name"] for label in self.labels]

    def has_label(self, label_id: str | None) -> bool:
        return bool(label_id) and label_id in self.label_set

    @classmethod
    def from_issue(cls, issue: dict[str, Any]) -> LabeledWorkItem:
        nodes = (issue.get("labels") or {}).get("nodes") or []
        labels = tuple(
            {"id": str(node.get("id")), "name": str(node.get("name") or "")}
            for node in nodes
            if node and node.get("id")
        )
        state = issue.get("state") or {}
        return cls(
            raw=issue,
            labels=labels,
            label_set=frozenset(label["id"] for label in labels),
            completed_at=parse_timestamp(issue.get("completedAt")),
            state_type=str(state.get("type") or "").lower(),
        )


def classify_work_items(issues: Iterable[dict[str, Any]]) -> list[LabeledWorkItem]:
    return [LabeledWorkItem.from_issue(issue) for issue in issues]


def is_committed(item: LabeledWorkItem, baseline_label_id: str | None, cancelled_label_id: str | None) -> bool:
    """Carries the cycle baseline label and is not cancelled."""
    if not baseline_label_id or not item.has_label(baseline_label_id):
        return False
    return not item.has_label(cancelled_label_id)


def filter_committed(
    items: Iterable[LabeledWorkItem],
    baseline_label_id: str | None,
    cancelled_label_id: str | None,
) -> list[LabeledWorkItem]:
    return [item for item in items if is_committed(item, baseline_label_id, cancelled_label_id)]


def is_completed_by(item: LabeledWorkItem, cutoff: datetime | None) -> bool:
    if item.state_type != COMPLETED_STATE_TYPE:
        return False
    if cutoff is None:
        return True
    return item.completed_at is not None and item.completed_at <= cutoff


def count_completed_by_cutoff(items: Iterable[LabeledWorkItem], cutoff: datetime | None) -> int:
    """Completed items with completedAt at or before ``cutoff`` (None counts all completed)."""
    return sum(1 for item in items if is_completed_by(item, cutoff))


def delivery_pct(completed: int, committed: int) -> str:
    """'85%' style percentage; zero committed is defined as '0%'."""
    if committed == 0:
        return "0%"
    pct = (Decimal(completed) * 100 / Decimal(committed)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"{pct}%"


def del_title(issue: dict[str, Any]) -> str:
    title = issue.get("title") or issue.get("identifier") or ""
    return _DEL_PREFIX_RE.sub("", str(title)).strip()


@dataclass(frozen=True)
class IssueFlags:
    """Label-name and priority flags for one non-DEL issue."""

    is_done: bool = False
    is_blocker: bool = False
    is_risk: bool = False
    is_bug: bool = False
    is_high_priority: bool = False


def classify_issue(issue: dict[str, Any]) -> IssueFlags:
    names = [
        str(node.get("name") or "").lower()
        for node in (issue.get("labels") or {}).get("nodes") or []
        if node
    ]
    return IssueFlags(
        is_done=str((issue.get("state") or {}).get("type") or "").lower() == COMPLETED_STATE_TYPE,
        is_blocker=any("blocker" in n or "blocked" in n for n in names),
        is_risk=any("risk" in n for n in names),
        is_bug=any("bug" in n for n in names),
        # 1 is urgent and 2 is high; 0 means no priority
        is_high_priority=issue.get("priority") in (1, 2),
    )

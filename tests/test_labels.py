from __future__ import annotations

from datetime import datetime, timezone

import pytest

from pod_kpi.labels import (
    IssueFlags,
    LabeledWorkItem,
    classify_issue,
    classify_work_items,
    count_completed_by_cutoff,
    del_title,
    delivery_pct,
    filter_committed,
    is_committed,
)

BASELINE = "lbl-c1"
CANCELLED = "lbl-cancelled"


def _issue(issue_id: str, *label_ids: str, state: str = "started", completed_at: str | None = None):
    return {
        "id": issue_id,
        "identifier": issue_id.upper(),
        "title": f"[DEL] {issue_id}",
        "completedAt": completed_at,
        "state": {"type": state, "name": state.title()},
        "labels": {"nodes": [{"id": label, "name": label} for label in label_ids]},
    }


@pytest.mark.parametrize(
    ("completed", "committed", "expected"),
    [
        (0, 0, "0%"),
        (5, 0, "0%"),
        (0, 4, "0%"),
        (1, 3, "33%"),
        (2, 3, "67%"),
        (1, 8, "13%"),
        (17, 20, "85%"),
        (4, 4, "100%"),
    ],
)
def test_delivery_pct(completed: int, committed: int, expected: str):
    assert delivery_pct(completed, committed) == expected


def test_from_issue_builds_label_set():
    item = LabeledWorkItem.from_issue(_issue("a", BASELINE, "other", state="Completed", completed_at="2026-01-10T10:00:00Z"))

    assert item.label_set == frozenset({BASELINE, "other"})
    assert item.label_names == [BASELINE, "other"]
    assert item.state_type == "completed"
    assert item.completed_at == datetime(2026, 1, 10, 10, tzinfo=timezone.utc)
    assert item.identifier == "A"


def test_from_issue_tolerates_missing_fields():
    item = LabeledWorkItem.from_issue({"id": "x"})
    assert item.label_set == frozenset()
    assert item.completed_at is None
    assert item.state_type == ""


def test_committed_requires_baseline_and_excludes_cancelled():
    items = classify_work_items(
        [
            _issue("a", BASELINE),
            _issue("b", BASELINE, CANCELLED),
            _issue("c", "lbl-c2"),
        ]
    )

    assert [i.id for i in filter_committed(items, BASELINE, CANCELLED)] == ["a"]
    assert not is_committed(items[0], None, CANCELLED)


def test_missing_cancelled_label_id_excludes_nothing():
    items = classify_work_items([_issue("a", BASELINE), _issue("b", BASELINE, CANCELLED)])
    assert len(filter_committed(items, BASELINE, None)) == 2


def test_count_completed_by_cutoff():
    cutoff = datetime(2026, 1, 18, 23, 59, 59, tzinfo=timezone.utc)
    items = classify_work_items(
        [
            _issue("on-time", BASELINE, state="completed", completed_at="2026-01-15T09:00:00Z"),
            _issue("at-cutoff", BASELINE, state="completed", completed_at="2026-01-18T23:59:59Z"),
            _issue("late", BASELINE, state="completed", completed_at="2026-01-20T09:00:00Z"),
            _issue("open", BASELINE, state="started"),
            _issue("no-date", BASELINE, state="completed"),
        ]
    )

    assert count_completed_by_cutoff(items, cutoff) == 2
    assert count_completed_by_cutoff(items, None) == 4


def test_del_title_strips_prefix():
    assert del_title({"title": "[DEL] Ship the thing"}) == "Ship the thing"
    assert del_title({"title": "Plain title"}) == "Plain title"
    assert del_title({"identifier": "FTS-12"}) == "FTS-12"


def test_classify_issue_reads_label_names_and_priority():
    issue = {
        "state": {"type": "Started"},
        "priority": 2,
        "labels": {"nodes": [{"name": "Blocked-External"}, {"name": "At Risk"}, {"name": "Bug"}]},
    }
    flags = classify_issue(issue)

    assert flags == IssueFlags(is_blocker=True, is_risk=True, is_bug=True, is_high_priority=True)


def test_classify_issue_defaults():
    assert classify_issue({}) == IssueFlags()
    assert classify_issue({"priority": 1}).is_high_priority
    assert not classify_issue({"priority": 0}).is_high_priority
    assert not classify_issue({"priority": 3}).is_high_priority
    assert classify_issue({"state": {"type": "completed"}, "labels": {"nodes": [None]}}).is_done

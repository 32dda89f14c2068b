"""
Pod delivery KPIs computed live from Linear DEL issues.

A) Pod x cycle table: committed / completed / delivery % / spillover.
B) Feature movement: per-pod project counts by normalized state.

Rules for one pod and one cycle:
  - committed: carries the cycle baseline label and not DEL-CANCELLED
  - completed: committed, state type "completed", completedAt <= cutoff where
    cutoff is now for an active cycle and the calendar end for a closed one
  - spillover: 0 while active, max(0, committed - completed) once closed

Expected failures (missing config, pods without a team, remote outages) are
returned as data; nothing here raises for them.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .aggregator import CrossPodAggregator
from .cache import TtlCache
from .config import CYCLE_KEYS, AppConfig, ConfigError, CycleCalendar, LabelIds, Pod
from .cycles import (
    as_utc,
    cycle_end,
    cycle_index,
    freeze_status,
    is_cycle_active,
    resolve_cycle,
    select_fallback_cycle,
)
from .labels import (
    LabeledWorkItem,
    classify_work_items,
    count_completed_by_cutoff,
    del_title,
    delivery_pct,
    filter_committed,
    is_completed_by,
)
from .linear_client import LinearApiError, LinearClient
from .states import CANCELLED, DONE, IN_FLIGHT, NOT_STARTED, feature_stats

logger = logging.getLogger(__name__)

ISSUES_TTL_SECONDS = 3 * 60
PROJECTS_TTL_SECONDS = 5 * 60

STATUS_OK = "OK"
STATUS_NO_TEAM_ID = "NO_TEAM_ID"
STATUS_NO_INITIATIVE = "NO_INITIATIVE"
STATUS_FETCH_FAILED = "FETCH_FAILED"

_QUARTER_PREFIX_RE = re.compile(r"^Q\d\s*\d{2,4}\s*[:-]\s*", re.IGNORECASE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CycleKpiRow:
    pod: str
    cycle: str
    committed: int = 0
    completed: int = 0
    delivery_pct: str = "0%"
    spillover: int = 0
    status: str = STATUS_OK

    def as_dict(self) -> dict[str, Any]:
        return {
            "pod": self.pod,
            "cycle": self.cycle,
            "committed": self.committed,
            "completed": self.completed,
            "deliveryPct": self.delivery_pct,
            "spillover": self.spillover,
            "status": self.status,
        }


def empty_cycle_rows(pod_name: str, status: str) -> list[CycleKpiRow]:
    return [CycleKpiRow(pod=pod_name, cycle=key, status=status) for key in CYCLE_KEYS]


def compute_cycle_row(
    pod_name: str,
    cycle_key: str,
    items: Iterable[LabeledWorkItem],
    calendar: CycleCalendar | None,
    baseline_label_id: str | None,
    cancelled_label_id: str | None,
    now: datetime,
) -> CycleKpiRow:
    committed_items = filter_committed(items, baseline_label_id, cancelled_label_id)
    committed = len(committed_items)

    active = is_cycle_active(calendar, cycle_key, now)
    cutoff = now if active else cycle_end(calendar, cycle_key)
    # no calendar window means no cutoff, so nothing can count as delivered
    completed = count_completed_by_cutoff(committed_items, cutoff) if cutoff is not None else 0

    spillover = 0 if active else max(0, committed - completed)
    return CycleKpiRow(
        pod=pod_name,
        cycle=cycle_key,
        committed=committed,
        completed=completed,
        delivery_pct=delivery_pct(completed, committed),
        spillover=spillover,
        status=STATUS_OK,
    )


def compute_pod_cycle_rows(
    pod_name: str,
    items: list[LabeledWorkItem],
    calendar: CycleCalendar | None,
    labels: LabelIds,
    quarter: str,
    now: datetime,
) -> list[CycleKpiRow]:
    return [
        compute_cycle_row(
            pod_name,
            key,
            items,
            calendar,
            labels.baseline(quarter, key),
            labels.cancelled_label,
            now,
        )
        for key in CYCLE_KEYS
    ]


def _short_project_name(name: str) -> str:
    # "Q1 2026 : Tagging system V2" -> "Tagging system V2"
    return _QUARTER_PREFIX_RE.sub("", name)


def _del_summary(item: LabeledWorkItem) -> dict[str, Any]:
    raw = item.raw
    return {
        "id": item.identifier,
        "title": del_title(raw),
        "assignee": (raw.get("assignee") or {}).get("name") or "Unassigned",
        "project": _short_project_name((raw.get("project") or {}).get("name") or "No Project"),
        "state": (raw.get("state") or {}).get("name"),
        "completedAt": raw.get("completedAt"),
    }


class KpiEngine:
    """Computes KPI tables for all configured pods."""

    def __init__(
        self,
        config: AppConfig,
        client: LinearClient | None,
        cache: TtlCache,
        aggregator: CrossPodAggregator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._client = client
        self._aggregator = aggregator or CrossPodAggregator(config.retry_delay_seconds)
        self._clock = clock
        self._cached_del_issues = cache.with_cache("del_issues", self._fetch_del_issues, ISSUES_TTL_SECONDS)
        self._cached_projects = cache.with_cache(
            "projects_by_initiative", self._fetch_projects, PROJECTS_TTL_SECONDS
        )

    def _require_client(self) -> LinearClient:
        if self._client is None:
            raise LinearApiError("linear_unconfigured", "Linear client is not configured")
        return self._client

    async def _fetch_del_issues(self, team_id: str, del_label_id: str) -> list[dict[str, Any]]:
        return await self._require_client().fetch_del_issues(team_id, del_label_id)

    async def _fetch_projects(self, initiative_id: str) -> list[dict[str, Any]]:
        return await self._require_client().projects_by_initiative(initiative_id)

    async def _gather_del_issues(self, pods: list[Pod], del_label_id: str):
        async def fetch(pod: Pod) -> list[dict[str, Any]]:
            return await self._cached_del_issues(pod.team_id, del_label_id)

        return await self._aggregator.gather(pods, fetch)

    async def compute_cycle_kpi(self, now: datetime | None = None) -> dict[str, Any]:
        now = as_utc(now or self._clock())
        try:
            self._config.require()
        except ConfigError as exc:
            return exc.as_result()

        labels = self._config.labels
        pods = list(self._config.pods.pods)
        quarter = self._config.quarter_for(now)
        del_label_id = labels.del_label

        outcomes = await self._gather_del_issues([p for p in pods if p.team_id], del_label_id)

        rows: list[CycleKpiRow] = []
        for pod in pods:
            if not pod.team_id:
                rows.extend(empty_cycle_rows(pod.name, STATUS_NO_TEAM_ID))
                continue
            outcome = outcomes[pod.name]
            if not outcome.ok:
                rows.extend(empty_cycle_rows(pod.name, STATUS_FETCH_FAILED))
                continue
            calendar = self._config.calendar_for(pod.name)
            if calendar is None:
                logger.warning("Missing calendar for pod %s in cycle_calendar.json", pod.name)
            items = classify_work_items(outcome.value or [])
            rows.extend(compute_pod_cycle_rows(pod.name, items, calendar, labels, quarter, now))

        current_cycle = self.current_cycle(now)
        fallback_cycle = select_fallback_cycle(rows, current_cycle)
        if fallback_cycle:
            logger.info("%s has 0 committed DELs, reporting %s instead", current_cycle, fallback_cycle)

        return {
            "success": True,
            "cycleKpi": [row.as_dict() for row in rows],
            "currentCycle": current_cycle,
            "fallbackCycle": fallback_cycle,
            "quarter": quarter,
            "fetchedAt": now.isoformat(),
            "source": self._config.pods.source,
        }

    async def compute_feature_movement(self) -> dict[str, Any]:
        now = self._clock()
        if self._config.pods is None:
            return ConfigError("MISSING_PODS_CONFIG", "No pods configuration found.").as_result()

        pods = list(self._config.pods.pods)

        async def fetch(pod: Pod) -> list[dict[str, Any]]:
            return await self._cached_projects(pod.initiative_id)

        outcomes = await self._aggregator.gather([p for p in pods if p.initiative_id], fetch)

        rows = []
        for pod in pods:
            row: dict[str, Any] = {
                "pod": pod.name,
                "plannedFeatures": 0,
                "done": 0,
                "inFlight": 0,
                "notStarted": 0,
                "cancelled": 0,
            }
            if not pod.initiative_id:
                row["status"] = STATUS_NO_INITIATIVE
            elif not outcomes[pod.name].ok:
                row["status"] = STATUS_FETCH_FAILED
            else:
                projects = outcomes[pod.name].value or []
                stats = feature_stats(projects)
                row.update(
                    plannedFeatures=len(projects),
                    done=stats[DONE],
                    inFlight=stats[IN_FLIGHT],
                    notStarted=stats[NOT_STARTED],
                    cancelled=stats[CANCELLED],
                    status=STATUS_OK,
                )
            rows.append(row)

        return {"success": True, "featureMovement": rows, "fetchedAt": now.isoformat()}

    async def compute_weekly_kpi(self) -> dict[str, Any]:
        cycle_result, feature_result = await asyncio.gather(
            self.compute_cycle_kpi(), self.compute_feature_movement()
        )
        if not cycle_result.get("success"):
            return cycle_result
        return {
            **cycle_result,
            "featureMovement": feature_result.get("featureMovement", []),
        }

    def _spillover_entry(
        self,
        pod: Pod,
        cycle: str,
        baseline: str,
        outcome: Any,
        now: datetime,
    ) -> dict[str, Any]:
        calendar = self._config.calendar_for(pod.name)
        active = is_cycle_active(calendar, cycle, now)
        end = cycle_end(calendar, cycle)
        entry: dict[str, Any] = {
            "pod": pod.name,
            "cycle": cycle,
            "isActive": active,
            "cycleEnd": end.isoformat() if end else None,
            "committed": 0,
            "completed": 0,
            "spillover": 0,
            "deliveryPct": "0%",
            "completedDELs": [],
            "spilloverDELs": [],
        }
        if not outcome.ok:
            entry["status"] = STATUS_FETCH_FAILED
            return entry

        committed = filter_committed(
            classify_work_items(outcome.value or []), baseline, self._config.labels.cancelled_label
        )
        cutoff = now if active else end
        done: list[LabeledWorkItem] = []
        open_items: list[LabeledWorkItem] = []
        for item in committed:
            delivered = cutoff is not None and is_completed_by(item, cutoff)
            (done if delivered else open_items).append(item)
        entry.update(
            committed=len(committed),
            completed=len(done),
            spillover=0 if active else len(open_items),
            deliveryPct=delivery_pct(len(done), len(committed)),
            completedDELs=[_del_summary(i) for i in done],
            spilloverDELs=[] if active else [_del_summary(i) for i in open_items],
            status=STATUS_OK,
        )
        return entry

    def _spillover_for(
        self, cycle: str, quarter: str, pods: list[Pod], outcomes: dict[str, Any], now: datetime
    ) -> dict[str, Any]:
        baseline = self._config.labels.baseline(quarter, cycle) if cycle_index(cycle) else None
        if not baseline:
            return {
                "success": False,
                "error": "INVALID_CYCLE",
                "message": f"Cycle label for {quarter}-{cycle} not found.",
            }

        results = [self._spillover_entry(pod, cycle, baseline, outcomes[pod.name], now) for pod in pods]
        return {
            "success": True,
            "cycle": cycle,
            "quarter": quarter,
            "pods": results,
            "totals": {
                "committed": sum(r["committed"] for r in results),
                "completed": sum(r["completed"] for r in results),
                "spillover": sum(r["spillover"] for r in results),
            },
            "fetchedAt": now.isoformat(),
        }

    async def spillover_by_cycle(self, cycle_key: str, now: datetime | None = None) -> dict[str, Any]:
        """Per-pod spillover for one cycle with the completed and spilled DELs listed."""
        now = as_utc(now or self._clock())
        try:
            self._config.require()
        except ConfigError as exc:
            return exc.as_result()

        cycle = str(cycle_key or "").strip().upper()
        quarter = self._config.quarter_for(now)
        if not (cycle_index(cycle) and self._config.labels.baseline(quarter, cycle)):
            return self._spillover_for(cycle, quarter, [], {}, now)

        pods = [p for p in self._config.pods.pods if p.team_id]
        outcomes = await self._gather_del_issues(pods, self._config.labels.del_label)
        return self._spillover_for(cycle, quarter, pods, outcomes, now)

    async def all_cycles_spillover(self, now: datetime | None = None) -> dict[str, Any]:
        """Spillover for C1..C6 from a single fetch per pod."""
        now = as_utc(now or self._clock())
        try:
            self._config.require()
        except ConfigError as exc:
            return exc.as_result()

        quarter = self._config.quarter_for(now)
        pods = [p for p in self._config.pods.pods if p.team_id]
        outcomes = await self._gather_del_issues(pods, self._config.labels.del_label)
        return {
            "success": True,
            "quarter": quarter,
            "cycles": {key: self._spillover_for(key, quarter, pods, outcomes, now) for key in CYCLE_KEYS},
            "fetchedAt": now.isoformat(),
        }

    def current_cycle(self, now: datetime | None = None) -> str:
        return resolve_cycle(self._config.reference_calendar(), as_utc(now or self._clock()))

    async def current_cycle_spillover(self, now: datetime | None = None) -> dict[str, Any]:
        now = as_utc(now or self._clock())
        return await self.spillover_by_cycle(self.current_cycle(now), now)

    async def previous_cycle_spillover(self, now: datetime | None = None) -> dict[str, Any]:
        now = as_utc(now or self._clock())
        idx = cycle_index(self.current_cycle(now)) or 1
        if idx <= 1:
            return {
                "success": False,
                "error": "NO_PREVIOUS_CYCLE",
                "message": "No previous cycle available.",
            }
        return await self.spillover_by_cycle(f"C{idx - 1}", now)

    async def pod_spillover_summary(self, pod_name: str, now: datetime | None = None) -> dict[str, Any]:
        """One pod's spillover entry for every cycle that has a baseline label."""
        pods = self._config.pods
        pod = pods.get(pod_name) if pods is not None else None
        if pods is not None and pod is None:
            return {
                "success": False,
                "error": "POD_NOT_FOUND",
                "message": f"Pod '{pod_name}' not found.",
                "availablePods": pods.names(),
            }

        everything = await self.all_cycles_spillover(now)
        if not everything.get("success"):
            return everything

        cycle_data = []
        for key in CYCLE_KEYS:
            result = everything["cycles"][key]
            if not result.get("success"):
                continue
            cycle_data.extend(entry for entry in result["pods"] if entry["pod"] == pod.name)
        return {
            "success": True,
            "pod": pod.name,
            "cycleData": cycle_data,
            "fetchedAt": everything["fetchedAt"],
        }

    def freeze_report(self, now: datetime | None = None) -> dict[str, Any]:
        now = as_utc(now or self._clock())
        if self._config.calendars is None:
            return ConfigError("MISSING_CYCLE_CALENDAR", "cycle_calendar.json not found.").as_result()
        policy = self._config.freeze_policy_cycle
        return {
            "success": True,
            "policyCycle": policy,
            "pods": {
                name: freeze_status(calendar, now, policy)
                for name, calendar in self._config.calendars.items()
            },
            "fetchedAt": now.isoformat(),
        }

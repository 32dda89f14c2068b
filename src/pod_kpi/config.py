"""
Static configuration: pods, label identifiers and per-pod cycle calendars.

Loaded once per process from JSON files in the config directory and kept in
frozen dataclasses. A missing or unreadable file leaves the matching field as
None so callers can report it as data instead of failing.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CYCLE_KEYS = ("C1", "C2", "C3", "C4", "C5", "C6")

DEFAULT_CONFIG_DIR = "config"
DEFAULT_FREEZE_POLICY_CYCLE = "C2"
DEFAULT_RETRY_DELAY_SECONDS = 1.0

DEL_LABEL = "DEL"
CANCELLED_LABEL = "DEL-CANCELLED"


class ConfigError(RuntimeError):
    """Raised when required configuration is absent or malformed."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def as_result(self) -> dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message}


def parse_timestamp(value: Any, *, end_of_day: bool = False) -> datetime | None:
    """Parse an ISO date or datetime into an aware UTC datetime.

    Naive values are taken as UTC. A date-only value is the start of that day,
    or its last instant when ``end_of_day`` is set.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
        if end_of_day:
            parsed = datetime.combine(value, time.max)
    else:
        raw = str(value).strip()
        if len(raw) == 10:
            try:
                day = date.fromisoformat(raw)
            except ValueError:
                return None
            return parse_timestamp(day, end_of_day=end_of_day)
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class CycleWindow:
    """Closed interval [start, end] for one cycle of one pod."""

    key: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class CycleCalendar:
    """Per-pod mapping C1..C6 -> CycleWindow. Missing cycles are allowed."""

    windows: dict[str, CycleWindow] = field(default_factory=dict)

    def get(self, key: str) -> CycleWindow | None:
        return self.windows.get(str(key).upper())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.upper() in self.windows

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> CycleCalendar:
        windows: dict[str, CycleWindow] = {}
        for key in CYCLE_KEYS:
            entry = (raw or {}).get(key)
            if not isinstance(entry, dict):
                continue
            start = parse_timestamp(entry.get("start"))
            end = parse_timestamp(entry.get("end"), end_of_day=True)
            if start is None or end is None:
                logger.warning("Ignoring cycle %s with unparseable dates: %r", key, entry)
                continue
            windows[key] = CycleWindow(key=key, start=start, end=end)
        return cls(windows=windows)


@dataclass(frozen=True)
class ProjectRef:
    """A project known from static configuration."""

    id: str
    name: str
    state: str | None = None


@dataclass(frozen=True)
class Pod:
    name: str
    team_id: str | None = None
    initiative_id: str | None = None
    initiative_name: str | None = None
    projects: tuple[ProjectRef, ...] = ()

    @classmethod
    def from_dict(cls, name: str, raw: dict[str, Any]) -> Pod:
        projects = tuple(
            ProjectRef(id=str(p.get("id", "")), name=str(p.get("name", "")), state=p.get("state"))
            for p in raw.get("projects") or []
            if isinstance(p, dict) and p.get("name")
        )
        return cls(
            name=name,
            team_id=raw.get("teamId") or None,
            initiative_id=raw.get("initiativeId") or None,
            initiative_name=raw.get("initiativeName") or None,
            projects=projects,
        )


@dataclass(frozen=True)
class PodsConfig:
    pods: tuple[Pod, ...]
    source: str
    org: dict[str, Any] | None = None

    def names(self) -> list[str]:
        return [pod.name for pod in self.pods]

    def get(self, name: str | None) -> Pod | None:
        """Case-insensitive exact lookup."""
        wanted = str(name or "").strip().lower()
        for pod in self.pods:
            if pod.name.lower() == wanted:
                return pod
        return None


@dataclass(frozen=True)
class LabelIds:
    """Label identifiers: DEL, DEL-CANCELLED and per-quarter cycle baselines."""

    raw: dict[str, str]

    @property
    def del_label(self) -> str | None:
        return self.raw.get(DEL_LABEL) or None

    @property
    def cancelled_label(self) -> str | None:
        return self.raw.get(CANCELLED_LABEL) or None

    def baseline(self, quarter: str, cycle_key: str) -> str | None:
        return self.raw.get(f"{quarter}-{cycle_key.upper()}") or None


@dataclass(frozen=True)
class AppConfig:
    pods: PodsConfig | None
    labels: LabelIds | None
    calendars: dict[str, CycleCalendar] | None
    quarter: str | None = None
    freeze_policy_cycle: str = DEFAULT_FREEZE_POLICY_CYCLE
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    reference_pod: str | None = None

    def calendar_for(self, pod_name: str) -> CycleCalendar | None:
        if self.calendars is None:
            return None
        return self.calendars.get(pod_name)

    def reference_calendar(self) -> CycleCalendar | None:
        """Calendar that decides the current cycle across all pods.

        The configured reference pod wins when it has a calendar; otherwise the
        first pod (in config order) that has one, then any calendar at all.
        """
        if not self.calendars:
            return None
        if self.reference_pod and self.reference_pod in self.calendars:
            return self.calendars[self.reference_pod]
        if self.reference_pod:
            logger.warning("Reference pod %s has no cycle calendar", self.reference_pod)
        for name in self.pods.names() if self.pods else []:
            if name in self.calendars:
                return self.calendars[name]
        return next(iter(self.calendars.values()))

    def quarter_for(self, moment: datetime) -> str:
        if self.quarter:
            return self.quarter
        return f"{moment.year}Q{(moment.month - 1) // 3 + 1}"

    def require(self) -> None:
        """Raise ConfigError for the first missing piece the KPI engine needs."""
        if self.labels is None:
            raise ConfigError(
                "MISSING_LABEL_IDS",
                "label_ids.json not found. Bootstrap label identifiers first.",
            )
        if self.calendars is None:
            raise ConfigError("MISSING_CYCLE_CALENDAR", "cycle_calendar.json not found.")
        if self.pods is None:
            raise ConfigError("MISSING_PODS_CONFIG", "No pods configuration found.")
        if not self.labels.del_label:
            raise ConfigError("MISSING_DEL_LABEL", "DEL label ID not found in label_ids.json")


def _read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return None


def load_pods_config(config_dir: Path) -> PodsConfig | None:
    linear_ids = _read_json(config_dir / "linear_ids.json")
    if isinstance(linear_ids, dict) and isinstance(linear_ids.get("pods"), dict):
        pods = tuple(Pod.from_dict(name, data or {}) for name, data in linear_ids["pods"].items())
        return PodsConfig(pods=pods, source="linear_ids.json", org=linear_ids.get("org"))

    pods_json = _read_json(config_dir / "pods.json")
    if isinstance(pods_json, dict):
        pods = tuple(Pod.from_dict(name, data or {}) for name, data in pods_json.items())
        return PodsConfig(pods=pods, source="pods.json")

    return None


def load_label_ids(config_dir: Path) -> LabelIds | None:
    data = _read_json(config_dir / "label_ids.json")
    if not isinstance(data, dict):
        return None
    return LabelIds(raw={str(k): str(v) for k, v in data.items() if v})


def load_calendars(config_dir: Path) -> tuple[dict[str, CycleCalendar] | None, str | None]:
    data = _read_json(config_dir / "cycle_calendar.json")
    if not isinstance(data, dict) or not isinstance(data.get("pods"), dict):
        return None, None
    calendars = {name: CycleCalendar.from_dict(raw) for name, raw in data["pods"].items()}
    quarter = data.get("quarter")
    return calendars, str(quarter) if quarter else None


def load_config(config_dir: str | os.PathLike[str] | None = None) -> AppConfig:
    directory = Path(config_dir or os.getenv("POD_KPI_CONFIG_DIR", DEFAULT_CONFIG_DIR))
    calendars, calendar_quarter = load_calendars(directory)
    policy = os.getenv("POD_KPI_FREEZE_POLICY_CYCLE", DEFAULT_FREEZE_POLICY_CYCLE).upper()
    if policy not in CYCLE_KEYS:
        logger.warning("Invalid POD_KPI_FREEZE_POLICY_CYCLE=%s, using %s", policy, DEFAULT_FREEZE_POLICY_CYCLE)
        policy = DEFAULT_FREEZE_POLICY_CYCLE
    try:
        retry_delay = float(os.getenv("POD_KPI_RETRY_DELAY_SECONDS", str(DEFAULT_RETRY_DELAY_SECONDS)))
    except ValueError:
        logger.warning("Invalid POD_KPI_RETRY_DELAY_SECONDS, using %s", DEFAULT_RETRY_DELAY_SECONDS)
        retry_delay = DEFAULT_RETRY_DELAY_SECONDS

    config = AppConfig(
        pods=load_pods_config(directory),
        labels=load_label_ids(directory),
        calendars=calendars,
        quarter=calendar_quarter or os.getenv("POD_KPI_QUARTER") or None,
        freeze_policy_cycle=policy,
        retry_delay_seconds=retry_delay,
        reference_pod=os.getenv("POD_KPI_REFERENCE_POD") or None,
    )
    logger.info(
        "Loaded config from %s (pods=%s, labels=%s, calendars=%s)",
        directory,
        config.pods.source if config.pods else None,
        config.labels is not None,
        len(config.calendars) if config.calendars is not None else None,
    )
    return config

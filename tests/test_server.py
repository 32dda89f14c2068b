from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from pod_kpi.cache import TtlCache
from pod_kpi.config import AppConfig, CycleCalendar, LabelIds, Pod, PodsConfig
from pod_kpi.server import _reference_time, build_service, create_server


class FakeLinearClient:
    def __init__(self):
        self.closed = False

    async def fetch_del_issues(self, team_id, del_label_id):
        return []

    async def projects_by_initiative(self, initiative_id):
        return []

    async def aclose(self):
        self.closed = True


def _config() -> AppConfig:
    return AppConfig(
        pods=PodsConfig(pods=(Pod("FTS", team_id="team-fts"),), source="linear_ids.json"),
        labels=LabelIds({"DEL": "lbl-del", "2026Q1-C1": "lbl-c1"}),
        calendars={"FTS": CycleCalendar.from_dict({"C1": {"start": "2026-01-05", "end": "2026-01-18"}})},
        quarter="2026Q1",
        retry_delay_seconds=0,
    )


def test_server_registers_tools(tmp_path: Path):
    service = build_service(_config(), client=FakeLinearClient(), cache=TtlCache(tmp_path))
    mcp = create_server(service)

    names = {tool.name for tool in asyncio.run(mcp.list_tools())}
    assert {
        "compute_cycle_kpi",
        "compute_feature_movement",
        "compute_weekly_kpi",
        "spillover_by_cycle",
        "all_cycles_spillover",
        "current_cycle_spillover",
        "previous_cycle_spillover",
        "pod_spillover_summary",
        "resolve_current_cycle",
        "get_freeze_status",
        "list_pods",
        "get_pod_projects",
        "find_project",
        "get_project",
        "get_blockers",
        "get_pod_summary",
        "cache_stats",
        "clear_cache",
    } <= names


def test_build_service_without_api_key_still_answers(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("LINEAR_API_KEY", raising=False)
    service = build_service(_config(), cache=TtlCache(tmp_path))

    assert service.client is None
    result = asyncio.run(service.engine.compute_cycle_kpi(now=datetime(2026, 1, 10, tzinfo=timezone.utc)))
    assert {row["status"] for row in result["cycleKpi"]} == {"FETCH_FAILED"}


def test_service_close_closes_client(tmp_path: Path):
    client = FakeLinearClient()
    service = build_service(_config(), client=client, cache=TtlCache(tmp_path))

    asyncio.run(service.aclose())
    assert client.closed


def test_reference_time():
    assert _reference_time("2026-01-10T08:00:00Z") == datetime(2026, 1, 10, 8, tzinfo=timezone.utc)
    assert _reference_time(None).tzinfo is not None
    with pytest.raises(ValueError):
        _reference_time("yesterday-ish")


def test_previous_cycle_tool_during_first_cycle(tmp_path: Path):
    service = build_service(_config(), client=FakeLinearClient(), cache=TtlCache(tmp_path))

    result = asyncio.run(service.engine.previous_cycle_spillover(now=datetime(2026, 1, 10, tzinfo=timezone.utc)))

    assert result["error"] == "NO_PREVIOUS_CYCLE"

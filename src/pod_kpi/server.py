"""
MCP server exposing pod delivery KPIs and project lookup as tools.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from mcp.server.fastmcp import FastMCP

from .aggregator import CrossPodAggregator
from .cache import TtlCache
from .config import AppConfig, load_config, parse_timestamp
from .cycles import freeze_status, resolve_cycle
from .kpi import KpiEngine, utc_now
from .linear_client import LinearClient
from .projects import ProjectDirectory

logger = logging.getLogger(__name__)


@dataclass
class PodKpiService:
    """Everything the tools need, constructed once and passed in explicitly."""

    config: AppConfig
    cache: TtlCache
    engine: KpiEngine
    directory: ProjectDirectory
    client: LinearClient | None = None

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


def build_service(
    config: AppConfig | None = None,
    client: LinearClient | None = None,
    cache: TtlCache | None = None,
) -> PodKpiService:
    config = config or load_config()
    cache = cache or TtlCache()
    if client is None:
        try:
            client = LinearClient()
        except ValueError as exc:
            # tools still answer; every remote fetch reports FETCH_FAILED
            logger.warning("Linear client unavailable: %s", exc)
    aggregator = CrossPodAggregator(config.retry_delay_seconds)
    return PodKpiService(
        config=config,
        cache=cache,
        engine=KpiEngine(config, client, cache, aggregator),
        directory=ProjectDirectory(config, client, cache, aggregator),
        client=client,
    )


def _reference_time(value: str | None) -> datetime:
    if not value:
        return utc_now()
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return parsed


def create_server(service: PodKpiService) -> FastMCP:
    @asynccontextmanager
    async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await service.aclose()

    mcp = FastMCP(
        "Pod KPI",
        instructions=(
            "Pod delivery KPIs computed live from Linear. "
            "Cycle KPIs count DEL issues committed to each cycle via baseline labels; "
            "feature movement counts initiative projects by normalized state. "
            "Use find_project to resolve an imprecise project name across all pods."
        ),
        lifespan=_lifespan,
    )

    @mcp.tool()
    async def compute_cycle_kpi() -> dict[str, Any]:
        """Pod x cycle DEL KPIs for the configured quarter.

        Returns:
            dict with "cycleKpi" (list of {pod, cycle, committed, completed,
            deliveryPct, spillover, status}), "currentCycle", "fallbackCycle",
            "quarter", "fetchedAt"; or {success: false, error, message}.
        """
        return await service.engine.compute_cycle_kpi()

    @mcp.tool()
    async def compute_feature_movement() -> dict[str, Any]:
        """Per-pod project counts: plannedFeatures, done, inFlight, notStarted, cancelled."""
        return await service.engine.compute_feature_movement()

    @mcp.tool()
    async def compute_weekly_kpi() -> dict[str, Any]:
        """Cycle KPIs and feature movement in one result."""
        return await service.engine.compute_weekly_kpi()

    @mcp.tool()
    async def spillover_by_cycle(cycle: str) -> dict[str, Any]:
        """Spillover for one cycle across pods, listing completed and spilled DELs.

        Args:
            cycle: Cycle key "C1".."C6".
        """
        return await service.engine.spillover_by_cycle(cycle)

    @mcp.tool()
    async def all_cycles_spillover() -> dict[str, Any]:
        """Spillover for every cycle C1..C6 keyed by cycle, for trend views."""
        return await service.engine.all_cycles_spillover()

    @mcp.tool()
    async def current_cycle_spillover() -> dict[str, Any]:
        """Spillover for the cycle that is current on the reference pod's calendar."""
        return await service.engine.current_cycle_spillover()

    @mcp.tool()
    async def previous_cycle_spillover() -> dict[str, Any]:
        """Spillover for the cycle before the current one; NO_PREVIOUS_CYCLE during C1."""
        return await service.engine.previous_cycle_spillover()

    @mcp.tool()
    async def pod_spillover_summary(pod: str) -> dict[str, Any]:
        """One pod's spillover entry for each cycle.

        Args:
            pod: Pod name (case-insensitive).
        """
        return await service.engine.pod_spillover_summary(pod)

    @mcp.tool()
    def resolve_current_cycle(pod: str, at: str | None = None) -> dict[str, Any]:
        """Cycle that is current for a pod at a given time (default now).

        Args:
            pod: Pod name (fuzzy).
            at: Optional ISO-8601 reference time.
        """
        target = service.directory.resolve_pod(pod)
        if target is None:
            return {"success": False, "error": "POD_NOT_FOUND", "message": f'Pod "{pod}" not found'}
        moment = _reference_time(at)
        calendar = service.config.calendar_for(target.name)
        return {
            "success": True,
            "pod": target.name,
            "cycle": resolve_cycle(calendar, moment),
            "hasCalendar": calendar is not None,
            "referenceTime": moment.isoformat(),
        }

    @mcp.tool()
    def get_freeze_status(pod: str | None = None, at: str | None = None) -> dict[str, Any]:
        """Which cycles are frozen or still refreshable under the freeze policy.

        Args:
            pod: Optional pod name (fuzzy). All pods when omitted.
            at: Optional ISO-8601 reference time.
        """
        moment = _reference_time(at)
        if not pod:
            return service.engine.freeze_report(moment)
        target = service.directory.resolve_pod(pod)
        if target is None:
            return {"success": False, "error": "POD_NOT_FOUND", "message": f'Pod "{pod}" not found'}
        policy = service.config.freeze_policy_cycle
        return {
            "success": True,
            "pod": target.name,
            "policyCycle": policy,
            "cycles": freeze_status(service.config.calendar_for(target.name), moment, policy),
        }

    @mcp.tool()
    def list_pods() -> dict[str, Any]:
        """Configured pods and whether their team and initiative IDs are set."""
        return service.directory.list_pods()

    @mcp.tool()
    async def get_pod_projects(pod: str) -> dict[str, Any]:
        """Live projects of a pod with normalized states and counts.

        Args:
            pod: Pod name (case-insensitive).
        """
        return await service.directory.get_pod_projects(pod)

    @mcp.tool()
    async def find_project(query: str, pod: str | None = None) -> dict[str, Any]:
        """Resolve a free-text project name to the best-matching project.

        Args:
            query: Project name as typed by a person.
            pod: Optional pod to search in. Searches every pod when omitted.
        """
        return await service.directory.find_project(query, pod)


    @mcp.tool()
    async def get_project(query: str, pod: str | None = None) -> dict[str, Any]:
        """Live project detail: issue counts, most recent open issues and blockers.

        Args:
            query: Project name as typed by a person.
            pod: Optional pod to search in. Searches every pod when omitted.
        """
        return await service.directory.get_project(query, pod)

    @mcp.tool()
    async def get_blockers(query: str, pod: str | None = None) -> dict[str, Any]:
        """Open issues of a project labeled as blockers or with a blocker keyword in the title.

        Args:
            query: Project name as typed by a person.
            pod: Optional pod to search in. Searches every pod when omitted.
        """
        return await service.directory.get_blockers(query, pod)

    @mcp.tool()
    async def get_pod_summary(pod: str) -> dict[str, Any]:
        """Project state counts, team issue counts and the most recently updated projects of a pod.

        Args:
            pod: Pod name (case-insensitive).
        """
        return await service.directory.get_pod_summary(pod)

    @mcp.tool()
    def cache_stats() -> dict[str, Any]:
        """Number and size of cached Linear responses."""
        return service.cache.stats()

    @mcp.tool()
    def clear_cache() -> dict[str, Any]:
        """Drop all cached Linear responses."""
        return {"removed": service.cache.clear()}

    return mcp


def main() -> None:
    create_server(build_service()).run()

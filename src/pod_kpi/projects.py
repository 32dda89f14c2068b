"""
Pod and project lookup by free-text name, plus live project and pod detail.

Live project lists come from Linear (cached per initiative). A pod without an
initiative uses its static project list from linear_ids.json, or its team's
projects when none is configured. When a fetch fails the static list is used so
name resolution still works.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .aggregator import CrossPodAggregator
from .cache import TtlCache
from .config import AppConfig, Pod, parse_timestamp
from .kpi import ISSUES_TTL_SECONDS, PROJECTS_TTL_SECONDS, utc_now
from .labels import IssueFlags, classify_issue
from .linear_client import LinearApiError, LinearClient
from .matching import ProjectMatch, find_best_project_match, fuzzy_match_pod, fuzzy_match_project, score_match
from .states import feature_stats, normalize_state

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 10
ACTIVE_ISSUE_LIMIT = 15
TOP_PROJECT_LIMIT = 5

BLOCKER_TITLE_KEYWORDS = ("blocker", "blocked by", "blocking")

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class DirectoryError(RuntimeError):
    """A lookup that ends in a structured failure result."""

    def __init__(self, code: str, message: str, **extra: Any):
        super().__init__(message)
        self.code = code
        self.message = message
        self.extra = extra

    def as_result(self) -> dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message, **self.extra}


def _project_view(project: dict[str, Any]) -> dict[str, Any]:
    lead = project.get("lead")
    return {
        "id": project.get("id"),
        "name": project.get("name"),
        "state": project.get("state"),
        "normalizedState": normalize_state(project.get("state")),
        "lead": lead.get("name") if isinstance(lead, dict) else lead,
        "targetDate": project.get("targetDate"),
        "url": project.get("url"),
        "updatedAt": project.get("updatedAt"),
    }


def _project_detail_view(summary: dict[str, Any], full: dict[str, Any]) -> dict[str, Any]:
    # the full record wins wherever it has a value
    view = _project_view({**summary, **{k: v for k, v in full.items() if v}})
    view["description"] = full.get("description") or None
    view["startDate"] = full.get("startDate")
    return view


def _static_projects(pod: Pod) -> list[dict[str, Any]]:
    return [{"id": p.id, "name": p.name, "state": p.state} for p in pod.projects]


def _updated_at(item: dict[str, Any]) -> datetime:
    return parse_timestamp(item.get("updatedAt")) or _OLDEST


def _issue_view(issue: dict[str, Any], flags: IssueFlags) -> dict[str, Any]:
    return {
        "id": issue.get("id"),
        "identifier": issue.get("identifier"),
        "title": issue.get("title"),
        "state": (issue.get("state") or {}).get("name"),
        "assignee": (issue.get("assignee") or {}).get("name"),
        "priority": issue.get("priority"),
        "isBlocker": flags.is_blocker,
        "isRisk": flags.is_risk,
        "url": issue.get("url"),
        "updatedAt": issue.get("updatedAt"),
    }


def issue_breakdown(
    issues: list[dict[str, Any]],
) -> tuple[dict[str, int], list[dict[str, Any]], list[dict[str, Any]]]:
    """Counts plus the open and blocking issues of one project.

    Blocker, risk, bug and priority counts only consider issues not yet done.
    Open issues come back most recently updated first.
    """
    stats = {"total": 0, "active": 0, "done": 0, "blockers": 0, "risks": 0, "bugs": 0, "highPriority": 0}
    active: list[dict[str, Any]] = []
    blockers: list[dict[str, Any]] = []
    for issue in issues:
        flags = classify_issue(issue)
        stats["total"] += 1
        if flags.is_done:
            stats["done"] += 1
            continue
        stats["active"] += 1
        view = _issue_view(issue, flags)
        active.append(view)
        if flags.is_blocker:
            stats["blockers"] += 1
            blockers.append(view)
        stats["risks"] += flags.is_risk
        stats["bugs"] += flags.is_bug
        stats["highPriority"] += flags.is_high_priority
    active.sort(key=_updated_at, reverse=True)
    return stats, active, blockers


def blocker_reason(issue: dict[str, Any], flags: IssueFlags) -> str | None:
    if flags.is_done:
        return None
    if flags.is_blocker:
        return "labeled as blocker"
    title = str(issue.get("title") or "").lower()
    if any(keyword in title for keyword in BLOCKER_TITLE_KEYWORDS):
        return "title contains blocker keyword"
    return None


class ProjectDirectory:
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
        # same namespace as the KPI engine so both share cached project lists
        self._cached_projects = cache.with_cache(
            "projects_by_initiative", self._fetch_projects, PROJECTS_TTL_SECONDS
        )
        self._cached_team_projects = cache.with_cache(
            "projects_by_team", self._fetch_team_projects, PROJECTS_TTL_SECONDS
        )
        self._cached_project = cache.with_cache("project_by_id", self._fetch_project, PROJECTS_TTL_SECONDS)
        self._cached_project_issues = cache.with_cache(
            "issues_by_project", self._fetch_project_issues, ISSUES_TTL_SECONDS
        )
        self._cached_team_issues = cache.with_cache("issues_by_team", self._fetch_team_issues, ISSUES_TTL_SECONDS)

    def _require_client(self) -> LinearClient:
        if self._client is None:
            raise LinearApiError("linear_unconfigured", "Linear client is not configured")
        return self._client

    async def _fetch_projects(self, initiative_id: str) -> list[dict[str, Any]]:
        return await self._require_client().projects_by_initiative(initiative_id)

    async def _fetch_team_projects(self, team_id: str) -> list[dict[str, Any]]:
        return await self._require_client().projects_by_team(team_id)

    async def _fetch_project(self, project_id: str) -> dict[str, Any] | None:
        return await self._require_client().project_by_id(project_id)

    async def _fetch_project_issues(self, project_id: str) -> list[dict[str, Any]]:
        return await self._require_client().issues_by_project(project_id)

    async def _fetch_team_issues(self, team_id: str) -> list[dict[str, Any]]:
        return await self._require_client().issues_by_team(team_id)

    def _pods(self) -> list[Pod]:
        return list(self._config.pods.pods) if self._config.pods else []

    def _missing_pods(self) -> dict[str, Any]:
        return DirectoryError("MISSING_PODS_CONFIG", "No pods configuration found.").as_result()

    def _pod_not_found(self, pod_query: str) -> dict[str, Any]:
        names = self._config.pods.names()
        return DirectoryError(
            "POD_NOT_FOUND",
            f'Pod "{pod_query}" not found',
            suggestion=fuzzy_match_pod(names, pod_query),
            availablePods=names,
        ).as_result()

    def list_pods(self) -> dict[str, Any]:
        if self._config.pods is None:
            return self._missing_pods()
        pods = [
            {
                "name": pod.name,
                "teamId": "configured" if pod.team_id else "missing",
                "initiativeId": "configured" if pod.initiative_id else "missing",
                "hasConfig": bool(pod.team_id and pod.initiative_id),
            }
            for pod in self._pods()
        ]
        org = self._config.pods.org or {}
        return {
            "success": True,
            "source": self._config.pods.source,
            "org": org.get("name"),
            "podCount": len(pods),
            "pods": pods,
        }

    def resolve_pod(self, query: str) -> Pod | None:
        if self._config.pods is None:
            return None
        exact = self._config.pods.get(query)
        if exact is not None:
            return exact
        name = fuzzy_match_pod(self._config.pods.names(), query)
        return self._config.pods.get(name) if name else None

    async def get_pod_projects(self, pod_query: str) -> dict[str, Any]:
        if self._config.pods is None:
            return self._missing_pods()
        pod = self._config.pods.get(pod_query)
        if pod is None:
            return self._pod_not_found(pod_query)
        if not pod.initiative_id:
            return {
                "success": False,
                "error": "NO_INITIATIVE_ID",
                "message": f'Pod "{pod.name}" has no initiativeId configured',
            }

        try:
            projects = await self._cached_projects(pod.initiative_id)
        except LinearApiError as exc:
            logger.warning("Project fetch for pod %s failed: %s", pod.name, exc.message)
            return {"success": False, "error": "FETCH_FAILED", "message": exc.message, "httpStatus": exc.status}

        return {
            "success": True,
            "pod": pod.name,
            "teamId": pod.team_id,
            "initiativeId": pod.initiative_id,
            "projectCount": len(projects),
            "stats": feature_stats(projects),
            "projects": [_project_view(p) for p in projects],
            "fetchedAt": self._clock().isoformat(),
        }

    async def _projects_for(self, pod: Pod) -> list[dict[str, Any]]:
        """Initiative projects, else the configured list, else the team's projects."""
        if pod.initiative_id:
            return await self._cached_projects(pod.initiative_id)
        if pod.projects or not pod.team_id:
            return _static_projects(pod)
        return await self._cached_team_projects(pod.team_id)

    async def all_pod_projects(self) -> dict[str, list[dict[str, Any]]]:
        """Project lists for every pod in configuration order."""
        outcomes = await self._aggregator.gather(self._pods(), self._projects_for)
        result: dict[str, list[dict[str, Any]]] = {}
        for name, outcome in outcomes.items():
            result[name] = outcome.value if outcome.ok else _static_projects(outcome.pod)
        return result

    async def _locate(self, query: str, pod: str | None = None) -> ProjectMatch:
        """Best project for ``query`` in one pod, or across all pods when ``pod`` is empty."""
        if self._config.pods is None:
            raise DirectoryError("MISSING_PODS_CONFIG", "No pods configuration found.")

        if not pod:
            best = find_best_project_match(await self.all_pod_projects(), query)
            if best is None:
                raise DirectoryError("PROJECT_NOT_FOUND", f'Project "{query}" not found in any pod')
            return best

        target = self.resolve_pod(pod)
        if target is None:
            raise DirectoryError(
                "POD_NOT_FOUND", f'Pod "{pod}" not found', availablePods=self._config.pods.names()
            )
        try:
            projects = await self._projects_for(target)
        except LinearApiError as exc:
            logger.warning("Project fetch for pod %s failed, using static list: %s", target.name, exc.message)
            projects = _static_projects(target)
        match = fuzzy_match_project(projects, query)
        if match is None:
            raise DirectoryError(
                "PROJECT_NOT_FOUND",
                f'Project "{query}" not found in pod {target.name}',
                availableProjects=[p.get("name") for p in projects[:MAX_SUGGESTIONS]],
            )
        return ProjectMatch(pod=target.name, project=match, score=score_match(match.get("name"), query))

    async def find_project(self, query: str, pod: str | None = None) -> dict[str, Any]:
        """Resolve a typed project name, within one pod or across all pods."""
        fetched_at = self._clock().isoformat()
        try:
            found = await self._locate(query, pod)
        except DirectoryError as exc:
            return exc.as_result()

        result = {"success": True, "pod": found.pod, "project": _project_view(found.project)}
        if not pod:
            result["score"] = found.score
        result["fetchedAt"] = fetched_at
        return result

    async def _load_project(
        self, query: str, pod: str | None
    ) -> tuple[ProjectMatch, dict[str, Any], list[dict[str, Any]]]:
        found = await self._locate(query, pod)
        project_id = found.project.get("id")
        try:
            full, issues = await asyncio.gather(
                self._cached_project(project_id), self._cached_project_issues(project_id)
            )
        except LinearApiError as exc:
            logger.warning("Detail fetch for project %s failed: %s", found.project.get("name"), exc.message)
            raise DirectoryError("FETCH_FAILED", exc.message, httpStatus=exc.status) from exc
        return found, full or {}, issues or []

    async def get_project(self, query: str, pod: str | None = None) -> dict[str, Any]:
        """Project detail with issue counts, open issues and blockers."""
        try:
            found, full, issues = await self._load_project(query, pod)
        except DirectoryError as exc:
            return exc.as_result()

        stats, active, blockers = issue_breakdown(issues)
        return {
            "success": True,
            "pod": found.pod,
            "project": _project_detail_view(found.project, full),
            "issueStats": stats,
            "activeIssues": active[:ACTIVE_ISSUE_LIMIT],
            "blockerIssues": blockers,
            "fetchedAt": self._clock().isoformat(),
        }

    async def get_blockers(self, query: str, pod: str | None = None) -> dict[str, Any]:
        """Open issues of a project that are labeled or titled as blockers."""
        try:
            found, full, issues = await self._load_project(query, pod)
        except DirectoryError as exc:
            return exc.as_result()

        blockers = []
        for issue in issues:
            reason = blocker_reason(issue, classify_issue(issue))
            if reason is None:
                continue
            blockers.append(
                {
                    "id": issue.get("id"),
                    "identifier": issue.get("identifier"),
                    "title": issue.get("title"),
                    "reason": reason,
                    "state": (issue.get("state") or {}).get("name"),
                    "assignee": (issue.get("assignee") or {}).get("name"),
                    "priority": issue.get("priority"),
                    "url": issue.get("url"),
                    "updatedAt": issue.get("updatedAt"),
                }
            )
        project = _project_detail_view(found.project, full)
        return {
            "success": True,
            "pod": found.pod,
            "project": project["name"],
            "projectUrl": project["url"],
            "blockerCount": len(blockers),
            "blockers": blockers,
            "fetchedAt": self._clock().isoformat(),
        }

    async def get_pod_summary(self, pod_query: str) -> dict[str, Any]:
        """Project and issue counts for one pod with its most recently updated projects."""
        if self._config.pods is None:
            return self._missing_pods()
        pod = self._config.pods.get(pod_query)
        if pod is None:
            return self._pod_not_found(pod_query)

        try:
            projects = await self._projects_for(pod)
        except LinearApiError as exc:
            logger.warning("Project fetch for pod %s failed: %s", pod.name, exc.message)
            return {"success": False, "error": "FETCH_FAILED", "message": exc.message, "httpStatus": exc.status}

        issue_stats = {"total": 0, "active": 0, "blockers": 0, "risks": 0}
        if pod.team_id:
            try:
                team_issues = await self._cached_team_issues(pod.team_id)
            except LinearApiError as exc:
                # summary still answers with project data only
                logger.warning("Issue fetch for pod %s failed: %s", pod.name, exc.message)
                team_issues = []
            for issue in team_issues:
                flags = classify_issue(issue)
                issue_stats["total"] += 1
                if flags.is_done:
                    continue
                issue_stats["active"] += 1
                issue_stats["blockers"] += flags.is_blocker
                issue_stats["risks"] += flags.is_risk

        top = sorted(projects, key=_updated_at, reverse=True)[:TOP_PROJECT_LIMIT]
        return {
            "success": True,
            "pod": pod.name,
            "teamId": pod.team_id,
            "initiativeId": pod.initiative_id,
            "initiativeName": pod.initiative_name,
            "projectCount": len(projects),
            "projectStats": feature_stats(projects),
            "issueStats": issue_stats,
            "topProjects": [_project_view(p) for p in top],
            "fetchedAt": self._clock().isoformat(),
        }

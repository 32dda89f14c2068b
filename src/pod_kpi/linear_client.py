"""
Minimal async Linear GraphQL client.

Only the queries the KPI engine and project directory need. Transport and
GraphQL errors surface as LinearApiError so callers can tell a remote failure
apart from a bug.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_LINEAR_GQL_URL = "https://api.linear.app/graphql"
DEFAULT_TIMEOUT_SECONDS = 30.0
ISSUE_PAGE_SIZE = 100
PROJECT_PAGE_SIZE = 200
TEAM_ISSUE_LIMIT = 250

Q_ISSUES_BY_TEAM_AND_LABEL = """
query IssuesByTeamAndLabel($teamId: ID!, $labelId: ID!, $first: Int!, $after: String) {
  issues(first: $first, after: $after, filter: {
    team: { id: { eq: $teamId } },
    labels: { id: { eq: $labelId } }
  }) {
    nodes {
      id
      identifier
      title
      createdAt
      completedAt
      state { type name }
      labels { nodes { id name } }
      assignee { id name }
      project { id name }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

_PROJECT_FIELDS = """
      id
      name
      state
      startDate
      targetDate
      lead { id name }
      url
      updatedAt
"""

Q_PROJECTS_BY_INITIATIVE = f"""
query ProjectsByInitiative($initiativeId: ID!, $first: Int!, $after: String) {{
  projects(first: $first, after: $after, filter: {{ initiatives: {{ id: {{ eq: $initiativeId }} }} }}) {{
    nodes {{{_PROJECT_FIELDS}    }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

Q_PROJECTS_BY_TEAM = f"""
query ProjectsByTeam($teamId: ID!, $first: Int!, $after: String) {{
  projects(first: $first, after: $after, filter: {{ accessibleTeams: {{ id: {{ eq: $teamId }} }} }}) {{
    nodes {{{_PROJECT_FIELDS}    }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

_ISSUE_FIELDS = """
      id
      identifier
      title
      url
      priority
      state { name type }
      assignee { name }
      updatedAt
      createdAt
      dueDate
      labels { nodes { name } }
"""

Q_ISSUES_BY_PROJECT = f"""
query IssuesByProject($projectId: ID!, $first: Int!, $after: String) {{
  issues(first: $first, after: $after, filter: {{ project: {{ id: {{ eq: $projectId }} }} }}) {{
    nodes {{{_ISSUE_FIELDS}      description
    }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

Q_ISSUES_BY_TEAM = f"""
query IssuesByTeam($teamId: ID!, $first: Int!) {{
  issues(first: $first, orderBy: updatedAt, filter: {{ team: {{ id: {{ eq: $teamId }} }} }}) {{
    nodes {{{_ISSUE_FIELDS}    }}
  }}
}}
"""

Q_PROJECT_BY_ID = """
query ProjectById($projectId: String!) {
  project(id: $projectId) {
    id
    name
    state
    description
    startDate
    targetDate
    lead { id name }
    url
    updatedAt
    createdAt
  }
}
"""


class LinearApiError(RuntimeError):
    """Raised when a Linear API call fails."""

    def __init__(self, code: str, message: str, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


class LinearClient:
    """Async GraphQL client. Owns one httpx.AsyncClient; close with ``aclose``."""

    def __init__(
        self,
        api_key: str | None = None,
        url: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key or os.getenv("LINEAR_API_KEY", "")
        self._url = url or os.getenv("LINEAR_GQL_URL", DEFAULT_LINEAR_GQL_URL)
        if not self._api_key:
            raise ValueError("Missing LINEAR_API_KEY in environment")
        self._http = httpx.AsyncClient(
            timeout=timeout_seconds,
            transport=transport,
            headers={"Authorization": self._api_key, "Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def gql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            resp = await self._http.post(self._url, json={"query": query, "variables": variables or {}})
        except httpx.HTTPError as exc:
            raise LinearApiError("linear_unavailable", f"Linear request failed: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            if not resp.is_success:
                raise self._http_error(resp)
            raise LinearApiError(
                "linear_graphql_error", "Linear returned a non-object response", status=resp.status_code
            )

        errors = payload.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) else errors
            message = first.get("message") if isinstance(first, dict) else str(first)
            raise LinearApiError(
                "linear_graphql_error", message or "Linear GraphQL error", status=resp.status_code
            )
        if not resp.is_success:
            raise self._http_error(resp)

        data = payload.get("data")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise LinearApiError(
                "linear_graphql_error", "Linear response data is not an object", status=resp.status_code
            )
        return data

    @staticmethod
    def _http_error(resp: httpx.Response) -> LinearApiError:
        return LinearApiError(
            "linear_http_error",
            f"Linear GraphQL error (HTTP {resp.status_code})",
            status=resp.status_code,
        )

    async def _paginate(
        self, query: str, variables: dict[str, Any], connection: str, page_size: int
    ) -> list[dict[str, Any]]:
        nodes: list[dict[str, Any]] = []
        after: str | None = None
        seen: set[str] = set()
        while True:
            data = await self.gql(query, {**variables, "first": page_size, "after": after})
            conn = data.get(connection) or {}
            if not isinstance(conn, dict) or not isinstance(conn.get("nodes") or [], list):
                raise LinearApiError("linear_graphql_error", f"Malformed '{connection}' connection")
            nodes.extend(conn.get("nodes") or [])
            page_info = conn.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            after = page_info.get("endCursor")
            # a missing or repeated cursor would request the same page forever
            if not after or after in seen:
                logger.warning("Linear %s pagination stalled at cursor %r", connection, after)
                raise LinearApiError(
                    "linear_pagination_error",
                    f"Linear reported more '{connection}' but returned no new cursor",
                )
            seen.add(after)
        return nodes

    async def fetch_del_issues(self, team_id: str, del_label_id: str) -> list[dict[str, Any]]:
        """All issues of ``team_id`` carrying ``del_label_id``, across every page."""
        issues = await self._paginate(
            Q_ISSUES_BY_TEAM_AND_LABEL,
            {"teamId": team_id, "labelId": del_label_id},
            "issues",
            ISSUE_PAGE_SIZE,
        )
        logger.debug("Fetched %d DEL issues for team %s", len(issues), team_id)
        return issues

    async def projects_by_initiative(self, initiative_id: str) -> list[dict[str, Any]]:
        return await self._paginate(
            Q_PROJECTS_BY_INITIATIVE, {"initiativeId": initiative_id}, "projects", PROJECT_PAGE_SIZE
        )

    async def projects_by_team(self, team_id: str) -> list[dict[str, Any]]:
        return await self._paginate(Q_PROJECTS_BY_TEAM, {"teamId": team_id}, "projects", PROJECT_PAGE_SIZE)

    async def project_by_id(self, project_id: str) -> dict[str, Any] | None:
        data = await self.gql(Q_PROJECT_BY_ID, {"projectId": project_id})
        return data.get("project") or None

    async def issues_by_project(self, project_id: str) -> list[dict[str, Any]]:
        return await self._paginate(
            Q_ISSUES_BY_PROJECT, {"projectId": project_id}, "issues", ISSUE_PAGE_SIZE
        )

    async def issues_by_team(self, team_id: str, limit: int = TEAM_ISSUE_LIMIT) -> list[dict[str, Any]]:
        """The ``limit`` most recently updated issues of a team. One page only."""
        data = await self.gql(Q_ISSUES_BY_TEAM, {"teamId": team_id, "first": limit})
        return (data.get("issues") or {}).get("nodes") or []

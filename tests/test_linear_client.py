from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from pod_kpi.linear_client import LinearApiError, LinearClient

URL = "https://linear.test/graphql"


def _client(handler) -> LinearClient:
    return LinearClient(api_key="lin_api_test", url=URL, transport=httpx.MockTransport(handler))


def _run(client: LinearClient, coro_factory):
    async def go():
        try:
            return await coro_factory(client)
        finally:
            await client.aclose()

    return asyncio.run(go())


def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("LINEAR_API_KEY", raising=False)
    with pytest.raises(ValueError):
        LinearClient()


def test_fetch_del_issues_follows_pagination():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "lin_api_test"
        variables = json.loads(request.content)["variables"]
        seen.append(variables)
        if variables["after"] is None:
            page = {"nodes": [{"id": "1"}, {"id": "2"}], "pageInfo": {"hasNextPage": True, "endCursor": "cur-1"}}
        else:
            page = {"nodes": [{"id": "3"}], "pageInfo": {"hasNextPage": False, "endCursor": None}}
        return httpx.Response(200, json={"data": {"issues": page}})

    issues = _run(_client(handler), lambda c: c.fetch_del_issues("team-1", "lbl-del"))

    assert [i["id"] for i in issues] == ["1", "2", "3"]
    assert [v["after"] for v in seen] == [None, "cur-1"]
    assert seen[0]["teamId"] == "team-1"
    assert seen[0]["labelId"] == "lbl-del"
    assert seen[0]["first"] == 100


def test_projects_by_initiative():
    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        assert variables["initiativeId"] == "init-1"
        page = {"nodes": [{"id": "p1", "name": "Apex Agent", "state": "started"}], "pageInfo": {"hasNextPage": False}}
        return httpx.Response(200, json={"data": {"projects": page}})

    projects = _run(_client(handler), lambda c: c.projects_by_initiative("init-1"))
    assert projects == [{"id": "p1", "name": "Apex Agent", "state": "started"}]


def test_graphql_errors_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Entity not found"}]})

    with pytest.raises(LinearApiError) as excinfo:
        _run(_client(handler), lambda c: c.gql("query { viewer { id } }"))

    assert excinfo.value.code == "linear_graphql_error"
    assert excinfo.value.message == "Entity not found"


def test_http_errors_raise_with_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream down")

    with pytest.raises(LinearApiError) as excinfo:
        _run(_client(handler), lambda c: c.gql("query { viewer { id } }"))

    assert excinfo.value.code == "linear_http_error"
    assert excinfo.value.status == 503


def test_transport_errors_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LinearApiError) as excinfo:
        _run(_client(handler), lambda c: c.gql("query { viewer { id } }"))

    assert excinfo.value.code == "linear_unavailable"


@pytest.mark.parametrize(
    "body",
    [
        {"errors": ["x"]},
        ["not", "an", "object"],
        {"data": ["not", "an", "object"]},
        "just a string",
    ],
)
def test_malformed_success_body_raises_graphql_error(body):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(LinearApiError) as excinfo:
        _run(_client(handler), lambda c: c.gql("query { viewer { id } }"))

    assert excinfo.value.code == "linear_graphql_error"


def test_null_data_is_an_empty_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": None})

    assert _run(_client(handler), lambda c: c.gql("query { viewer { id } }")) == {}


def test_pagination_without_cursor_stops_with_error():
    calls: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content)["variables"])
        page = {"nodes": [{"id": "1"}], "pageInfo": {"hasNextPage": True, "endCursor": None}}
        return httpx.Response(200, json={"data": {"issues": page}})

    with pytest.raises(LinearApiError) as excinfo:
        _run(_client(handler), lambda c: c.fetch_del_issues("team-1", "lbl-del"))

    assert excinfo.value.code == "linear_pagination_error"
    assert len(calls) == 1


def test_pagination_with_repeated_cursor_stops_with_error():
    calls: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content)["variables"])
        page = {"nodes": [{"id": "1"}], "pageInfo": {"hasNextPage": True, "endCursor": "same"}}
        return httpx.Response(200, json={"data": {"projects": page}})

    with pytest.raises(LinearApiError) as excinfo:
        _run(_client(handler), lambda c: c.projects_by_team("team-1"))

    assert excinfo.value.code == "linear_pagination_error"
    assert [v["after"] for v in calls] == [None, "same"]


def test_project_by_id_and_missing_project():
    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        project = {"id": "p1", "name": "Apex Agent"} if variables["projectId"] == "p1" else None
        return httpx.Response(200, json={"data": {"project": project}})

    assert _run(_client(handler), lambda c: c.project_by_id("p1")) == {"id": "p1", "name": "Apex Agent"}
    assert _run(_client(handler), lambda c: c.project_by_id("nope")) is None


def test_issues_by_project_paginates_and_issues_by_team_takes_one_page():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        seen.append(variables)
        if "projectId" in variables:
            done = variables["after"] == "c1"
            page = {
                "nodes": [{"id": "i2" if done else "i1"}],
                "pageInfo": {"hasNextPage": not done, "endCursor": None if done else "c1"},
            }
        else:
            page = {"nodes": [{"id": "t1"}, {"id": "t2"}]}
        return httpx.Response(200, json={"data": {"issues": page}})

    by_project = _run(_client(handler), lambda c: c.issues_by_project("p1"))
    by_team = _run(_client(handler), lambda c: c.issues_by_team("team-1"))

    assert [i["id"] for i in by_project] == ["i1", "i2"]
    assert [i["id"] for i in by_team] == ["t1", "t2"]
    assert seen[0]["first"] == 100
    assert seen[-1] == {"teamId": "team-1", "first": 250}

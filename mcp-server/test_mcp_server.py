"""
Tests for the TaskMaster MCP server tool dispatch.

The backend is replaced with an httpx.MockTransport that records each request
and answers with canned JSON.
"""

import asyncio
import json
import logging

import httpx
import pytest

import server

logger = logging.getLogger(__name__)


class RecordingBackend:
    def __init__(self, status_code: int = 200, body=None):
        self.requests = []
        self.status_code = status_code
        self.body = {"ok": True} if body is None else body

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self):
        return json.loads(self.last.content) if self.last.content else None


@pytest.fixture
def backend(monkeypatch):
    recorder = RecordingBackend()
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(recorder),
        base_url="http://api.test",
        headers={"Authorization": "Bearer test-token"},
    )
    monkeypatch.setattr(server, "http_client", client)
    yield recorder
    asyncio.run(client.aclose())


def call(name, arguments=None):
    return asyncio.run(server.dispatch(name, arguments or {}))


def test_create_task_sends_camel_case(backend):
    call("create_task", {"title": "Write docs", "due_date": "2026-11-01", "priority": "high"})

    assert backend.last.method == "POST"
    assert backend.last.url.path == "/api/tasks"
    assert backend.last.headers["Authorization"] == "Bearer test-token"
    assert backend.last_json() == {"title": "Write docs", "dueDate": "2026-11-01", "priority": "high"}
    logger.info("✓ create_task maps arguments to API fields")


def test_update_task_can_move_project(backend):
    call("update_task", {"task_id": 7, "status": "in_progress", "project_id": 3})

    assert backend.last.method == "PUT"
    assert backend.last.url.path == "/api/tasks/7"
    assert backend.last_json() == {"status": "in_progress", "projectId": 3}


def test_complete_task(backend):
    call("complete_task", {"task_id": 4})

    assert backend.last.method == "PUT"
    assert backend.last_json() == {"status": "completed"}


@pytest.mark.parametrize(
    "tool,arguments,method,path",
    [
        ("get_current_user", {}, "GET", "/api/user"),
        ("list_tasks", {}, "GET", "/api/tasks"),
        ("get_task", {"task_id": 2}, "GET", "/api/tasks/2"),
        ("delete_task", {"task_id": 2}, "DELETE", "/api/tasks/2"),
        ("restore_task", {"task_id": 2}, "POST", "/api/tasks/2/restore"),
        ("list_projects", {}, "GET", "/api/projects"),
        ("get_project", {"project_id": 5}, "GET", "/api/projects/5"),
        ("delete_project", {"project_id": 5}, "DELETE", "/api/projects/5"),
        ("restore_project", {"project_id": 5}, "POST", "/api/projects/5/restore"),
        ("list_project_tasks", {"project_id": 5}, "GET", "/api/projects/5/tasks"),
        ("list_project_members", {"project_id": 5}, "GET", "/api/projects/5/members"),
        ("remove_project_member", {"project_id": 5, "user_id": 9}, "DELETE", "/api/projects/5/members/9"),
    ],
)
def test_tool_routes(backend, tool, arguments, method, path):
    call(tool, arguments)

    assert backend.last.method == method
    assert backend.last.url.path == path


def test_set_project_progress_uses_patch(backend):
    call("set_project_progress", {"project_id": 5, "progress": 60})

    assert backend.last.method == "PATCH"
    assert backend.last.url.path == "/api/projects/5"
    assert backend.last_json() == {"progress": 60}


def test_create_project_task(backend):
    call("create_project_task", {"project_id": 5, "title": "Mockups", "assignee_id": 2})

    assert backend.last.url.path == "/api/projects/5/tasks"
    assert backend.last_json() == {"title": "Mockups", "assigneeId": 2}


def test_add_project_member(backend):
    call("add_project_member", {"project_id": 5, "email": "max@example.com"})

    assert backend.last.method == "POST"
    assert backend.last_json() == {"inviteeEmail": "max@example.com"}


def test_get_activities_limit(backend):
    call("get_activities", {"limit": 3})

    assert backend.last.url.path == "/api/activities"
    assert backend.last.url.params["limit"] == "3"


def test_api_error_is_reported(backend):
    backend.status_code = 403
    backend.body = {"detail": "Not authorized"}

    result = call("delete_task", {"task_id": 1})

    assert result["error"] == "API error: 403"
    assert "Not authorized" in result["detail"]


def test_unknown_tool(backend):
    assert call("launch_rocket") == {"error": "Unknown tool: launch_rocket"}
    assert backend.requests == []


def test_call_tool_returns_json_text(backend):
    backend.body = [{"id": 1, "title": "Only task"}]

    content = asyncio.run(server.call_tool("list_tasks", {}))

    assert content[0].type == "text"
    assert json.loads(content[0].text) == [{"id": 1, "title": "Only task"}]


def test_every_listed_tool_is_dispatched(backend):
    """No advertised tool falls through to the unknown-tool branch."""
    tools = asyncio.run(server.list_tools())

    for tool in tools:
        arguments = {key: 1 for key in tool.inputSchema.get("required", [])}
        if "email" in arguments:
            arguments["email"] = "someone@example.com"
        result = call(tool.name, arguments)
        assert result != {"error": f"Unknown tool: {tool.name}"}, tool.name
    logger.info(f"✓ All {len(tools)} tools dispatch to the API")

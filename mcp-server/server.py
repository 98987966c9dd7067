#!/usr/bin/env python3
"""
TaskMaster MCP Server

This MCP server gives assistants programmatic access to the TaskMaster API.
It runs on port 6000 using SSE transport for HTTP-based connections and calls
the API with a bearer token (TASKMASTER_API_TOKEN) obtained from /api/auth/login.
"""

import os
import json
import logging
from typing import Any, Optional
import httpx
from mcp.server import Server
from mcp.server.sse import SseServerTransport
from starlette.applications import Starlette
from starlette.routing import Mount, Route
from starlette.responses import JSONResponse, Response
import uvicorn
from mcp.types import Tool, TextContent

logger = logging.getLogger(__name__)

# Configuration
API_BASE_URL = os.getenv("TASKMASTER_API_URL", "http://localhost:8000")
API_TOKEN = os.getenv("TASKMASTER_API_TOKEN")
MCP_PORT = int(os.getenv("MCP_PORT", "6000"))

TASK_STATUSES = ["todo", "in_progress", "completed"]
TASK_PRIORITIES = ["low", "medium", "high"]
PROJECT_STATUSES = ["in_progress", "completed", "on_track", "at_risk", "delayed"]

# Tool argument name -> API body field (camelCase on the wire)
TASK_FIELDS = {
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "due_date": "dueDate",
    "assignee_id": "assigneeId",
}
PROJECT_FIELDS = {
    "title": "title",
    "description": "description",
    "status": "status",
    "progress": "progress",
    "due_date": "dueDate",
}

# Initialize MCP server
server = Server("taskmaster")

# HTTP client for API calls
http_client: Optional[httpx.AsyncClient] = None


async def get_client() -> httpx.AsyncClient:
    global http_client
    if http_client is None:
        headers = {"Authorization": f"Bearer {API_TOKEN}"} if API_TOKEN else {}
        http_client = httpx.AsyncClient(base_url=API_BASE_URL, headers=headers, timeout=30.0)
    return http_client


async def api_request(method: str, endpoint: str, data: dict = None) -> Any:
    """Make an API request to the backend."""
    client = await get_client()
    try:
        if method == "GET":
            response = await client.get(endpoint, params=data)
        elif method == "POST":
            response = await client.post(endpoint, json=data)
        elif method == "PUT":
            response = await client.put(endpoint, json=data)
        elif method == "PATCH":
            response = await client.patch(endpoint, json=data)
        elif method == "DELETE":
            response = await client.delete(endpoint)
        else:
            return {"error": f"Unsupported method: {method}"}

        if response.status_code >= 400:
            logger.info(f"{method} {endpoint} failed with {response.status_code}")
            return {"error": f"API error: {response.status_code}", "detail": response.text}

        if response.status_code == 204 or not response.text:
            return {"success": True}

        return response.json()
    except httpx.RequestError as e:
        logger.warning(f"{method} {endpoint} request failed: {e}")
        return {"error": f"Request failed: {str(e)}"}
    except json.JSONDecodeError:
        return {"error": "Invalid JSON response from API"}


def pick_fields(arguments: dict, fields: dict) -> dict:
    """Copy the arguments that were given, renamed to their API field names."""
    return {api_name: arguments[arg] for arg, api_name in fields.items() if arg in arguments}


def _id_schema(name: str, description: str) -> dict:
    return {
        "type": "object",
        "properties": {name: {"type": "integer", "description": description}},
        "required": [name]
    }


TASK_PROPERTIES = {
    "title": {"type": "string", "description": "Task title"},
    "description": {"type": "string", "description": "Task description"},
    "status": {"type": "string", "enum": TASK_STATUSES, "description": "Task status (default: todo)"},
    "priority": {"type": "string", "enum": TASK_PRIORITIES, "description": "Task priority (default: medium)"},
    "due_date": {"type": "string", "description": "Due date, free-form (e.g. 2026-11-01)"},
}

PROJECT_PROPERTIES = {
    "title": {"type": "string", "description": "Project title"},
    "description": {"type": "string", "description": "Project description"},
    "status": {"type": "string", "enum": PROJECT_STATUSES, "description": "Project status"},
    "progress": {"type": "integer", "minimum": 0, "maximum": 100, "description": "Progress percentage"},
    "due_date": {"type": "string", "description": "Due date, free-form"},
}


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        # User tools
        Tool(
            name="get_current_user",
            description="Get the profile of the user the server is authenticated as",
            inputSchema={"type": "object", "properties": {}, "required": []}
        ),

        # Task tools
        Tool(
            name="list_tasks",
            description="List tasks created by or assigned to the current user",
            inputSchema={"type": "object", "properties": {}, "required": []}
        ),
        Tool(
            name="get_task",
            description="Get a task by ID",
            inputSchema=_id_schema("task_id", "Task ID")
        ),
        Tool(
            name="create_task",
            description="Create a personal task (always assigned to the current user)",
            inputSchema={
                "type": "object",
                "properties": TASK_PROPERTIES,
                "required": ["title"]
            }
        ),
        Tool(
            name="update_task",
            description="Update a task; moving it to another project recalculates both projects' progress",
            inputSchema={
                "type": "object",
                "properties": {
                    "task_id": {"type": "integer", "description": "Task ID"},
                    **TASK_PROPERTIES,
                    "assignee_id": {"type": "integer", "description": "Assignee user ID"},
                    "project_id": {"type": "integer", "description": "Move the task to this project"}
                },
                "required": ["task_id"]
            }
        ),
        Tool(
            name="complete_task",
            description="Mark a task as completed",
            inputSchema=_id_schema("task_id", "Task ID")
        ),
        Tool(
            name="delete_task",
            description="Delete a task (can be undone with restore_task)",
            inputSchema=_id_schema("task_id", "Task ID")
        ),
        Tool(
            name="restore_task",
            description="Undo the deletion of a task",
            inputSchema=_id_schema("task_id", "Task ID")
        ),

        # Project tools
        Tool(
            name="list_projects",
            description="List projects owned by or shared with the current user",
            inputSchema={"type": "object", "properties": {}, "required": []}
        ),
        Tool(
            name="get_project",
            description="Get a project by ID",
            inputSchema=_id_schema("project_id", "Project ID")
        ),
        Tool(
            name="create_project",
            description="Create a new project owned by the current user",
            inputSchema={
                "type": "object",
                "properties": PROJECT_PROPERTIES,
                "required": ["title"]
            }
        ),
        Tool(
            name="update_project",
            description="Update a project (owner only)",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_id": {"type": "integer", "description": "Project ID"},
                    **PROJECT_PROPERTIES
                },
                "required": ["project_id"]
            }
        ),
        Tool(
            name="set_project_progress",
            description="Set a project's progress percentage directly (owner only)",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_id": {"type": "integer", "description": "Project ID"},
                    "progress": PROJECT_PROPERTIES["progress"]
                },
                "required": ["project_id", "progress"]
            }
        ),
        Tool(
            name="delete_project",
            description="Delete a project (owner only, tasks are kept, can be undone with restore_project)",
            inputSchema=_id_schema("project_id", "Project ID")
        ),
        Tool(
            name="restore_project",
            description="Undo the deletion of a project (owner only)",
            inputSchema=_id_schema("project_id", "Project ID")
        ),

        # Project task tools
        Tool(
            name="list_project_tasks",
            description="List all tasks of a project",
            inputSchema=_id_schema("project_id", "Project ID")
        ),
        Tool(
            name="create_project_task",
            description="Create a task inside a project; the assignee may be any user",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_id": {"type": "integer", "description": "Project ID"},
                    **TASK_PROPERTIES,
                    "assignee_id": {"type": "integer", "description": "Assignee user ID"}
                },
                "required": ["project_id", "title"]
            }
        ),

        # Member tools
        Tool(
            name="list_project_members",
            description="List the members of a project",
            inputSchema=_id_schema("project_id", "Project ID")
        ),
        Tool(
            name="add_project_member",
            description="Invite a user to a project by email (owner only)",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_id": {"type": "integer", "description": "Project ID"},
                    "email": {"type": "string", "description": "Email of the user to invite"}
                },
                "required": ["project_id", "email"]
            }
        ),
        Tool(
            name="remove_project_member",
            description="Remove a member from a project (owner only)",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_id": {"type": "integer", "description": "Project ID"},
                    "user_id": {"type": "integer", "description": "Member user ID"}
                },
                "required": ["project_id", "user_id"]
            }
        ),

        # Activity tool
        Tool(
            name="get_activities",
            description="Get the current user's recent activity, newest first",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {"type": "integer", "minimum": 1, "maximum": 100, "description": "Number of entries (default: 10)"}
                },
                "required": []
            }
        ),
    ]


async def dispatch(name: str, arguments: dict[str, Any]) -> Any:
    """Translate a tool call into an API request and return the decoded result."""

    # User tools
    if name == "get_current_user":
        return await api_request("GET", "/api/user")

    # Task tools
    if name == "list_tasks":
        return await api_request("GET", "/api/tasks")

    if name == "get_task":
        return await api_request("GET", f"/api/tasks/{arguments['task_id']}")

    if name == "create_task":
        return await api_request("POST", "/api/tasks", pick_fields(arguments, TASK_FIELDS))

    if name == "update_task":
        data = pick_fields(arguments, TASK_FIELDS)
        if "project_id" in arguments:
            data["projectId"] = arguments["project_id"]
        return await api_request("PUT", f"/api/tasks/{arguments['task_id']}", data)

    if name == "complete_task":
        return await api_request("PUT", f"/api/tasks/{arguments['task_id']}", {"status": "completed"})

    if name == "delete_task":
        return await api_request("DELETE", f"/api/tasks/{arguments['task_id']}")

    if name == "restore_task":
        return await api_request("POST", f"/api/tasks/{arguments['task_id']}/restore")

    # Project tools
    if name == "list_projects":
        return await api_request("GET", "/api/projects")

    if name == "get_project":
        return await api_request("GET", f"/api/projects/{arguments['project_id']}")

    if name == "create_project":
        return await api_request("POST", "/api/projects", pick_fields(arguments, PROJECT_FIELDS))

    if name == "update_project":
        data = pick_fields(arguments, PROJECT_FIELDS)
        return await api_request("PUT", f"/api/projects/{arguments['project_id']}", data)

    if name == "set_project_progress":
        data = {"progress": arguments["progress"]}
        return await api_request("PATCH", f"/api/projects/{arguments['project_id']}", data)

    if name == "delete_project":
        return await api_request("DELETE", f"/api/projects/{arguments['project_id']}")

    if name == "restore_project":
        return await api_request("POST", f"/api/projects/{arguments['project_id']}/restore")

    # Project task tools
    if name == "list_project_tasks":
        return await api_request("GET", f"/api/projects/{arguments['project_id']}/tasks")

    if name == "create_project_task":
        data = pick_fields(arguments, TASK_FIELDS)
        return await api_request("POST", f"/api/projects/{arguments['project_id']}/tasks", data)

    # Member tools
    if name == "list_project_members":
        return await api_request("GET", f"/api/projects/{arguments['project_id']}/members")

    if name == "add_project_member":
        data = {"inviteeEmail": arguments["email"]}
        return await api_request("POST", f"/api/projects/{arguments['project_id']}/members", data)

    if name == "remove_project_member":
        endpoint = f"/api/projects/{arguments['project_id']}/members/{arguments['user_id']}"
        return await api_request("DELETE", endpoint)

    # Activity tool
    if name == "get_activities":
        params = {"limit": arguments["limit"]} if "limit" in arguments else None
        return await api_request("GET", "/api/activities", params)

    return {"error": f"Unknown tool: {name}"}


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    result = await dispatch(name, arguments or {})
    return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]


# SSE Transport setup
sse = SseServerTransport("/messages/")

async def handle_sse(request):
    """Handle SSE connections."""
    async with sse.connect_sse(
        request.scope, request.receive, request._send
    ) as streams:
        await server.run(
            streams[0], streams[1], server.create_initialization_options()
        )
    return Response()

async def health_check(request):
    """Health check endpoint."""
    return JSONResponse({"status": "healthy", "server": "taskmaster-mcp", "port": MCP_PORT})

# Create Starlette app
app = Starlette(
    routes=[
        Route("/health", health_check, methods=["GET"]),
        Route("/sse", handle_sse, methods=["GET"]),
        Mount("/messages/", app=sse.handle_post_message),
    ],
)

if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    if not API_TOKEN:
        logger.warning("⚠️  TASKMASTER_API_TOKEN not set, every API call will return 401")
    logger.info(f"🚀 TaskMaster MCP Server starting on port {MCP_PORT}")
    logger.info(f"📡 SSE endpoint: http://localhost:{MCP_PORT}/sse")
    logger.info(f"💬 Messages endpoint: http://localhost:{MCP_PORT}/messages/")
    logger.info(f"🔗 Backend API: {API_BASE_URL}")
    uvicorn.run(app, host="0.0.0.0", port=MCP_PORT)

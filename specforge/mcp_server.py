"""JSON-RPC 2.0 MCP server used by coding agents.

Agents authenticate with a bearer token (a project MCP token, or the static
``MCP_TOKEN`` fallback when enabled) and drive two protocols through
``tools/call``: reality snapshots and the iterative project import.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .auth import McpTokenService, bearer_token
from .config import Settings, get_settings
from .errors import InvalidIdError, SpecForgeError, TokenError
from .importer import ImportService
from .reality import RealitySnapshotService, environment_snapshot_schema
from .specforge_logging import log_error_with_context, observability_hooks

logger = logging.getLogger("specforge.mcp")

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "SpecForge Reality Anchor Engine"
SERVER_VERSION = "1.0.0"

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
UNAUTHORIZED = -32000

USAGE_ORDER = [
    "create_snapshot",
    "post_snapshot",
    "get_snapshot_status",
    "list_active_snapshots",
]

IMPORT_USAGE_ORDER = [
    "init_project_import",
    "submit_project_snapshot",
    "get_import_alignment_rules",
    "submit_post_import_snapshot",
    "finalize_project_import",
]


# ----------------------------------------------------------------------
# Tool catalogue
# ----------------------------------------------------------------------

def _category_schemas() -> Dict[str, Any]:
    array = {"type": "array", "items": {"type": "object"}}
    return {
        "project_overview": {"type": "object"},
        "tech_stack": {"type": "object"},
        "modules": array,
        "apis": array,
        "data_models": array,
        "contracts": array,
        "risks": array,
        "change_sensitivity": array,
        "validation_rules": array,
        "current_state": {"type": "object"},
    }


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "create_snapshot",
        "description": "Initiates a pre-implementation environment extraction request.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project_id": {"type": "string", "description": "Project UUID"},
                "roadmap_item_id": {"type": "string", "description": "Roadmap item UUID"},
                "mode": {"type": "string", "enum": ["pre-implementation"]},
            },
            "required": ["project_id", "roadmap_item_id", "mode"],
        },
    },
    {
        "name": "post_snapshot",
        "description": "Submits structured environment snapshot back to SpecForge.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "snapshot_id": {"type": "string"},
                "environment_snapshot": environment_snapshot_schema(),
            },
            "required": ["snapshot_id", "environment_snapshot"],
        },
    },
    {
        "name": "get_snapshot_status",
        "description": "Returns the current lifecycle state of a snapshot.",
        "inputSchema": {
            "type": "object",
            "properties": {"snapshot_id": {"type": "string"}},
            "required": ["snapshot_id"],
        },
    },
    {
        "name": "list_active_snapshots",
        "description": "Lists all snapshots currently in an active state (not completed or failed).",
        "inputSchema": {
            "type": "object",
            "properties": {"project_id": {"type": "string", "description": "Optional project filter"}},
        },
    },
    {
        "name": "init_project_import",
        "description": "Starts an iterative project catalogue import and returns the documents to produce.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project_id": {"type": "string"},
                "language_stack": {"type": "array", "items": {"type": "string"}},
                "repository_type": {"type": "string", "enum": ["monorepo", "polyrepo", "single"]},
                "estimated_size": {"type": "string", "enum": ["small", "medium", "large"]},
                "import_mode": {"type": "string", "enum": ["light", "full"]},
            },
            "required": ["project_id"],
        },
    },
    {
        "name": "submit_project_snapshot",
        "description": "Submits a batch of catalogue documents; repeat until the catalogue is complete.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project_id": {"type": "string"},
                "snapshot_version": {"type": "string"},
                "snapshot_payload": {"type": "object", "properties": _category_schemas()},
                "final_submission": {"type": "boolean"},
                "self_assessment": {"type": "object"},
            },
            "required": ["project_id", "snapshot_payload"],
        },
    },
    {
        "name": "get_import_alignment_rules",
        "description": "Returns the rules an agent must follow when changing an imported project.",
        "inputSchema": {
            "type": "object",
            "properties": {"project_id": {"type": "string"}},
            "required": ["project_id"],
        },
    },
    {
        "name": "submit_post_import_snapshot",
        "description": "Submits a snapshot taken after changes and returns drift and alignment deltas.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project_id": {"type": "string"},
                "snapshot_version": {"type": "string"},
                "snapshot_payload": {"type": "object"},
            },
            "required": ["project_id", "snapshot_payload"],
        },
    },
    {
        "name": "finalize_project_import",
        "description": "Locks the current import session and returns the dashboard location.",
        "inputSchema": {
            "type": "object",
            "properties": {"project_id": {"type": "string"}},
            "required": ["project_id"],
        },
    },
    {
        "name": "help",
        "description": "Returns tool descriptions, required usage order, and JSON schema examples.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


class McpError(Exception):
    """A JSON-RPC error object raised from a handler."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


def _require_object(arguments: Any) -> Dict[str, Any]:
    if arguments is None:
        return {}
    if not isinstance(arguments, dict):
        raise McpError(INVALID_PARAMS, "Invalid arguments")
    return arguments


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------

class McpHandlers:
    """One method per MCP tool; each returns a JSON-serialisable result."""

    def __init__(self, reality: RealitySnapshotService, importer: ImportService):
        self.reality = reality
        self.importer = importer
        self._tools: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "create_snapshot": self.create_snapshot,
            "post_snapshot": self.post_snapshot,
            "get_snapshot_status": self.get_snapshot_status,
            "list_active_snapshots": self.list_active_snapshots,
            "init_project_import": self.init_project_import,
            "submit_project_snapshot": self.submit_project_snapshot,
            "get_import_alignment_rules": self.get_import_alignment_rules,
            "submit_post_import_snapshot": self.submit_post_import_snapshot,
            "finalize_project_import": self.finalize_project_import,
            "help": self.help,
        }

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def call(self, name: str, arguments: Any) -> Any:
        if name not in self._tools:
            raise McpError(METHOD_NOT_FOUND, f"Tool not found: {name}")
        return self._tools[name](_require_object(arguments))

    @staticmethod
    def _failure(message: str, error: SpecForgeError) -> McpError:
        if isinstance(error, InvalidIdError):
            return McpError(INVALID_PARAMS, error.message, error.details)
        return McpError(INTERNAL_ERROR, message, error.message)

    # Reality snapshots -------------------------------------------------

    def create_snapshot(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.reality.create_snapshot(
                str(args.get("project_id", "")),
                str(args.get("roadmap_item_id", "")),
                str(args.get("mode") or "pre-implementation"),
            )
        except SpecForgeError as e:
            raise self._failure("Failed to create snapshot", e)

    def post_snapshot(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.reality.post_snapshot(str(args.get("snapshot_id", "")), args.get("environment_snapshot"))
        except SpecForgeError as e:
            if isinstance(e, InvalidIdError):
                raise self._failure("", e)
            # transition errors surface their own message
            raise McpError(INTERNAL_ERROR, e.message, e.details)

    def get_snapshot_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.reality.get_snapshot_status(str(args.get("snapshot_id", "")))
        except SpecForgeError as e:
            raise self._failure("Snapshot not found", e)

    def list_active_snapshots(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            snapshots = self.reality.list_active_snapshots(args.get("project_id") or None)
        except SpecForgeError as e:
            raise self._failure("Failed to list snapshots", e)
        return {"snapshots": snapshots, "count": len(snapshots)}

    # Project import ----------------------------------------------------

    def init_project_import(self, args: Dict[str, Any]) -> Dict[str, Any]:
        hints = {k: args.get(k) for k in ("language_stack", "repository_type", "estimated_size", "import_mode")}
        try:
            return self.importer.init_project_import(str(args.get("project_id", "")), **hints)
        except SpecForgeError as e:
            raise self._failure("Failed to initialize import", e)

    def submit_project_snapshot(self, args: Dict[str, Any]) -> Dict[str, Any]:
        payload = args.get("snapshot_payload")
        if payload is not None and not isinstance(payload, dict):
            raise McpError(INVALID_PARAMS, "Invalid arguments", "snapshot_payload must be an object")
        try:
            return self.importer.submit_project_snapshot(
                str(args.get("project_id", "")),
                payload,
                final_submission=bool(args.get("final_submission", False)),
                self_assessment=args.get("self_assessment") if isinstance(args.get("self_assessment"), dict) else None,
            )
        except SpecForgeError as e:
            raise self._failure("Failed to submit snapshot", e)

    def get_import_alignment_rules(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.importer.get_import_alignment_rules(str(args.get("project_id", "")))
        except SpecForgeError as e:
            raise self._failure("Failed to get alignment rules", e)

    def submit_post_import_snapshot(self, args: Dict[str, Any]) -> Dict[str, Any]:
        payload = args.get("snapshot_payload")
        if payload is not None and not isinstance(payload, dict):
            raise McpError(INVALID_PARAMS, "Invalid arguments", "snapshot_payload must be an object")
        try:
            return self.importer.submit_post_import_snapshot(str(args.get("project_id", "")), payload)
        except SpecForgeError as e:
            raise self._failure("Failed to submit post-import snapshot", e)

    def finalize_project_import(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.importer.finalize_project_import(str(args.get("project_id", "")))
        except SpecForgeError as e:
            raise self._failure("Failed to finalize import", e)

    # Help ----------------------------------------------------------------

    def help(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "description": "SpecForge Reality Anchor Engine (RAE) MCP Server",
            "tools": [{"name": t["name"], "description": t["description"]} for t in TOOL_DEFINITIONS],
            "usage_order": list(USAGE_ORDER),
            "import_usage_order": list(IMPORT_USAGE_ORDER),
            "rules": [
                "Snapshots must be initiated before posting data.",
                "Snapshot IDs are unique and versioned per roadmap item.",
            ],
            "schemas": {
                "EnvironmentSnapshot": environment_snapshot_schema(),
            },
            "examples": {
                "create_snapshot": {
                    "project_id": "6f1c2a9e-1d2b-4c3d-8e9f-0a1b2c3d4e5f",
                    "roadmap_item_id": "0b7e8d6c-5a4f-4e3d-9c2b-1a0f9e8d7c6b",
                    "mode": "pre-implementation",
                },
                "post_snapshot": {
                    "snapshot_id": "<snapshot_id from create_snapshot>",
                    "environment_snapshot": {
                        "file_tree": ["main.py", "app/routes.py"],
                        "api_routes": [{"method": "GET", "path": "/health"}],
                        "database": {"migrations": ["0001_initial.sql"], "detected_tables": ["users"]},
                    },
                },
            },
        }


# ----------------------------------------------------------------------
# Router
# ----------------------------------------------------------------------

def _response(request_id: Any, result: Any = None, error: Optional[McpError] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
    if error is not None:
        body["error"] = error.to_dict()
    else:
        body["result"] = result
    return body


class McpRouter:
    """Authenticate, decode and dispatch one JSON-RPC request."""

    def __init__(self, handlers: McpHandlers, token_service: Optional[McpTokenService] = None,
                 settings: Optional[Settings] = None):
        self.handlers = handlers
        self.token_service = token_service
        self.settings = settings or get_settings()

    def authenticate(self, authorization: Optional[str]) -> None:
        if not authorization:
            raise McpError(UNAUTHORIZED, "Authentication required")
        token = bearer_token(authorization)
        if not token:
            raise McpError(UNAUTHORIZED, "Invalid authorization format")
        if self.settings.allow_static_token and self.settings.mcp_token and token == self.settings.mcp_token:
            return
        if self.token_service is None:
            raise McpError(UNAUTHORIZED, "Unauthorized")
        try:
            self.token_service.validate_token(token)
        except TokenError:
            raise McpError(UNAUTHORIZED, "Unauthorized")

    def handle(self, body: Union[bytes, str, Dict[str, Any]], authorization: Optional[str] = None) -> Dict[str, Any]:
        try:
            self.authenticate(authorization)
        except McpError as e:
            logger.warning(f"MCP request rejected: {e.message}")
            return _response(None, error=e)

        if isinstance(body, (bytes, str)):
            try:
                request = json.loads(body)
            except ValueError:
                return _response(None, error=McpError(PARSE_ERROR, "Parse error"))
        else:
            request = body
        if not isinstance(request, dict):
            return _response(None, error=McpError(PARSE_ERROR, "Parse error"))

        request_id = request.get("id")
        method = request.get("method", "")
        try:
            result = self.dispatch(method, request.get("params"))
        except McpError as e:
            return _response(request_id, error=e)
        except Exception as e:
            log_error_with_context(e, {"operation": "mcp_dispatch", "method": method})
            return _response(request_id, error=McpError(INTERNAL_ERROR, "Internal error", str(e)))
        return _response(request_id, result=result)

    def dispatch(self, method: str, params: Any) -> Any:
        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            }
        if method == "notifications/initialized":
            return {}
        if method == "tools/list":
            return {"tools": TOOL_DEFINITIONS}
        if method == "tools/call":
            if not isinstance(params, dict) or not isinstance(params.get("name"), str):
                raise McpError(INVALID_PARAMS, "Invalid params")
            name = params["name"]
            logger.info(f"MCP tool call: {name}")
            observability_hooks.log_domain_event("mcp_tool_called", tool=name)
            return self.handlers.call(name, params.get("arguments"))
        raise McpError(METHOD_NOT_FOUND, "Method not found")


# ----------------------------------------------------------------------
# HTTP transport
# ----------------------------------------------------------------------

def create_mcp_app(router: McpRouter, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=SERVER_NAME, version=SERVER_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["*"],
    )

    async def rpc(request: Request) -> JSONResponse:
        body = await request.body()
        # handlers block on the store and the notification hub
        response = await run_in_threadpool(router.handle, body, request.headers.get("authorization"))
        return JSONResponse(response)

    app.add_api_route("/mcp", rpc, methods=["POST"])
    app.add_api_route("/", rpc, methods=["POST"])
    return app


def run() -> None:
    """Console entry point: serve the MCP endpoint on ``MCP_PORT``."""
    import uvicorn

    from .services import build_container
    from .specforge_logging import initialize_default_logging

    settings = get_settings()
    initialize_default_logging(settings.log_level, settings.log_file)
    container = build_container(settings)
    logger.info(f"Starting MCP server on port {settings.mcp_port}")
    uvicorn.run(create_mcp_app(container.mcp_router, settings), host=settings.api_host, port=settings.mcp_port)

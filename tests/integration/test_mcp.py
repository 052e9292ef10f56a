"""Integration tests for the MCP JSON-RPC router, its HTTP app and the stdio tools."""

import json
import threading

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from specforge.config import Settings
from specforge.mcp_server import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_NAME,
    TOOL_DEFINITIONS,
    UNAUTHORIZED,
    McpRouter,
    create_mcp_app,
)

STATIC = "Bearer static-mcp-token"

ENVIRONMENT = {
    "file_tree": ["app/main.py", "app/routes.py"],
    "api_routes": [{"method": "GET", "path": "/orders"}],
    "database": {"migrations": ["0001_init.sql"], "detected_tables": ["orders"]},
}


@pytest.fixture
def router(container):
    return container.mcp_router


@pytest.fixture
def rpc(router):
    """Send one request through the router with the static token."""

    def _rpc(method, params=None, authorization=STATIC, request_id=1):
        return router.handle({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params},
                             authorization)

    return _rpc


@pytest.fixture
def tool(rpc):
    """Call a tool and return the whole response."""

    def _tool(name, **arguments):
        return rpc("tools/call", {"name": name, "arguments": arguments})

    return _tool


class TestAuthentication:
    """Bearer checks in front of every method."""

    def test_missing_header(self, rpc):
        """Test the unauthenticated error."""
        response = rpc("initialize", authorization=None)

        assert response["id"] is None
        assert response["error"] == {"code": UNAUTHORIZED, "message": "Authentication required"}

    def test_wrong_scheme(self, rpc):
        """Test a non-bearer header."""
        assert rpc("initialize", authorization="Basic abc")["error"]["message"] == "Invalid authorization format"

    def test_unknown_token(self, rpc):
        """Test a bearer token nobody issued."""
        assert rpc("initialize", authorization="Bearer sf_live_nope")["error"]["message"] == "Unauthorized"

    def test_project_token(self, rpc, container, project):
        """Test issued tokens work until revoked."""
        issued = container.tokens.create_token(project.id, "agent")
        header = f"Bearer {issued['token']}"

        assert "result" in rpc("initialize", authorization=header)

        container.tokens.revoke_token(issued["id"])
        assert rpc("initialize", authorization=header)["error"]["code"] == UNAUTHORIZED

    def test_static_token_can_be_disabled(self, container):
        """Test that the static fallback honours its switch."""
        settings = Settings(mcp_token="static-mcp-token", allow_static_token=False)
        router = McpRouter(container.mcp_router.handlers, container.tokens, settings)

        response = router.handle({"jsonrpc": "2.0", "id": 1, "method": "initialize"}, STATIC)

        assert response["error"]["code"] == UNAUTHORIZED


class TestProtocol:
    """JSON-RPC decoding and dispatch."""

    def test_initialize(self, rpc):
        """Test the handshake result."""
        result = rpc("initialize")["result"]

        assert result["serverInfo"]["name"] == SERVER_NAME
        assert result["capabilities"] == {"tools": {}}

    def test_tools_list(self, rpc):
        """Test the tool catalogue."""
        names = [t["name"] for t in rpc("tools/list")["result"]["tools"]]

        assert names == [t["name"] for t in TOOL_DEFINITIONS]
        assert "create_snapshot" in names and "help" in names

    def test_parse_error(self, router):
        """Test malformed JSON bodies."""
        response = router.handle(b"{not json", STATIC)

        assert response["error"]["code"] == PARSE_ERROR
        assert response["id"] is None

    def test_unknown_method(self, rpc):
        """Test an unsupported method keeps the request id."""
        response = rpc("resources/list", request_id=7)

        assert response["id"] == 7
        assert response["error"] == {"code": METHOD_NOT_FOUND, "message": "Method not found"}

    def test_unknown_tool(self, tool):
        """Test an unknown tool name."""
        assert tool("drop_database")["error"]["message"] == "Tool not found: drop_database"

    def test_bad_params(self, rpc):
        """Test params and arguments that are not objects."""
        assert rpc("tools/call", ["create_snapshot"])["error"]["code"] == INVALID_PARAMS
        response = rpc("tools/call", {"name": "help", "arguments": [1, 2]})
        assert response["error"] == {"code": INVALID_PARAMS, "message": "Invalid arguments"}

    def test_help(self, tool):
        """Test the usage guide."""
        result = tool("help")["result"]

        assert result["usage_order"][0] == "create_snapshot"
        assert result["import_usage_order"][-1] == "finalize_project_import"


class TestSnapshotTools:
    """Reality snapshots over MCP."""

    def test_full_lifecycle(self, tool, project, make_item):
        """Test create, post and status through tools/call."""
        item = make_item("Orders API")

        created = tool("create_snapshot", project_id=project.id, roadmap_item_id=item.id,
                       mode="pre-implementation")["result"]
        posted = tool("post_snapshot", snapshot_id=created["snapshot_id"],
                      environment_snapshot=ENVIRONMENT)["result"]
        status = tool("get_snapshot_status", snapshot_id=created["snapshot_id"])["result"]
        active = tool("list_active_snapshots", project_id=project.id)["result"]

        assert created["state"] == "awaiting_post"
        assert posted["verdict"] == "approved"
        assert status["state"] == "completed"
        assert active == {"snapshots": [], "count": 0}

    def test_invalid_id_is_invalid_params(self, tool, make_item):
        """Test that id format errors map to -32602."""
        response = tool("create_snapshot", project_id="nope", roadmap_item_id=make_item().id)

        assert response["error"]["code"] == INVALID_PARAMS
        assert response["error"]["message"] == "Invalid project_id"

    def test_repeated_post_is_a_transition_error(self, tool, project, make_item):
        """Test that a second post surfaces the transition message."""
        snapshot_id = tool("create_snapshot", project_id=project.id,
                           roadmap_item_id=make_item().id)["result"]["snapshot_id"]
        tool("post_snapshot", snapshot_id=snapshot_id, environment_snapshot=ENVIRONMENT)

        response = tool("post_snapshot", snapshot_id=snapshot_id, environment_snapshot=ENVIRONMENT)

        assert response["error"]["code"] == INTERNAL_ERROR
        assert response["error"]["message"].startswith("invalid state transition")

    def test_unknown_snapshot(self, tool):
        """Test the not-found wrapping."""
        response = tool("get_snapshot_status", snapshot_id="00000000-0000-4000-8000-000000000000")

        assert response["error"]["code"] == INTERNAL_ERROR
        assert response["error"]["message"] == "Snapshot not found"


class TestImportTools:
    """The iterative import over MCP."""

    def test_import_flow(self, tool, project):
        """Test init, two rounds, rules, comparison and finalize."""
        init = tool("init_project_import", project_id=project.id, language_stack=["python"])["result"]
        first = tool("submit_project_snapshot", project_id=project.id,
                     snapshot_payload={"apis": [{"path": "/a"}, {"path": "/b"}]})["result"]
        second = tool("submit_project_snapshot", project_id=project.id,
                      snapshot_payload={"apis": [{"path": "/c"}], "modules": [{"name": "core"}]})["result"]
        rules = tool("get_import_alignment_rules", project_id=project.id)["result"]
        post = tool("submit_post_import_snapshot", project_id=project.id,
                    snapshot_payload={"apis": [{"path": "/a"}]})["result"]
        final = tool("finalize_project_import", project_id=project.id)["result"]

        assert init["status"] == "initialized"
        assert init["import_hints"] == {"language_stack": ["python"]}
        assert (first["completeness_score"], second["completeness_score"]) == (5, 10)
        assert rules["strict_rules"]
        assert post["recommendation"] in ("approve", "review")
        assert final["redirect_url"] == f"/projects/{project.id}/dashboard"

    def test_empty_payload(self, tool, project):
        """Test the empty-snapshot error detail."""
        tool("init_project_import", project_id=project.id)

        response = tool("submit_project_snapshot", project_id=project.id, snapshot_payload={})

        assert response["error"]["message"] == "Failed to submit snapshot"
        assert response["error"]["data"].startswith("snapshot_payload is empty")

    def test_payload_must_be_object(self, tool, project):
        """Test the payload type check."""
        response = tool("submit_project_snapshot", project_id=project.id, snapshot_payload=["apis"])

        assert response["error"]["code"] == INVALID_PARAMS


class TestHttpTransport:
    """The FastAPI app in front of the router."""

    @pytest.fixture
    def http(self, router, settings):
        return TestClient(create_mcp_app(router, settings))

    @pytest.mark.parametrize("path", ["/mcp", "/"])
    def test_rpc_over_http(self, http, path):
        """Test both mount points."""
        resp = http.post(path, content=json.dumps({"jsonrpc": "2.0", "id": 3, "method": "initialize"}),
                         headers={"Authorization": STATIC})

        assert resp.status_code == 200
        assert resp.json()["id"] == 3
        assert resp.json()["result"]["serverInfo"]["name"] == SERVER_NAME

    def test_errors_are_still_200(self, http):
        """Test that JSON-RPC errors travel in a 200 response."""
        resp = http.post("/mcp", content=b"{", headers={"Authorization": STATIC})

        assert resp.status_code == 200
        assert resp.json()["error"]["code"] == PARSE_ERROR

    async def test_async_client(self, router, settings):
        """Test a tools/list call from an async client."""
        transport = httpx.ASGITransport(app=create_mcp_app(router, settings))
        async with httpx.AsyncClient(transport=transport, base_url="http://mcp") as client:
            resp = await client.post("/mcp", json={"jsonrpc": "2.0", "id": "a", "method": "tools/list"},
                                     headers={"Authorization": STATIC})

        assert resp.json()["id"] == "a"
        assert len(resp.json()["result"]["tools"]) == len(TOOL_DEFINITIONS)

    async def test_router_runs_off_the_event_loop(self, router, settings, monkeypatch):
        """Test that the blocking router call is moved to a worker thread."""
        handled_on = []
        handle = router.handle

        def recording_handle(body, authorization):
            handled_on.append(threading.get_ident())
            return handle(body, authorization)

        monkeypatch.setattr(router, "handle", recording_handle)
        transport = httpx.ASGITransport(app=create_mcp_app(router, settings))
        async with httpx.AsyncClient(transport=transport, base_url="http://mcp") as client:
            resp = await client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"},
                                     headers={"Authorization": STATIC})

        assert resp.json()["result"]["serverInfo"]["name"] == SERVER_NAME
        assert handled_on and handled_on[0] != threading.get_ident()


class TestStdioTools:
    """The FastMCP tool functions in main.py."""

    @pytest.fixture(autouse=True)
    def wired(self, container, monkeypatch):
        monkeypatch.setattr(main, "_container", container)

    def test_snapshot_tools_add_guidance(self, project, make_item):
        """Test the workflow hints around the shared handlers."""
        created = main.create_snapshot(project.id, make_item().id)
        posted = main.post_snapshot(created["snapshot_id"], ENVIRONMENT)

        assert created["next_suggested_step"] == "post_snapshot"
        assert posted["next_suggested_step"] == "get_snapshot_status"
        assert main.get_snapshot_status(created["snapshot_id"])["state"] == "completed"

    def test_errors_become_value_errors(self):
        """Test that handler failures are raised with their detail."""
        with pytest.raises(ValueError, match="Invalid snapshot_id"):
            main.get_snapshot_status("bad")

    def test_resource_lists_active_snapshots(self, project, make_item):
        """Test the snapshots resource text."""
        assert main.resource_snapshots() == "No active snapshots."

        created = main.create_snapshot(project.id, make_item().id)

        assert f"- {created['snapshot_id']}: awaiting_post" in main.resource_snapshots()

    def test_import_tools_point_to_next_step(self, project):
        """Test the next-step hint before and after the catalogue locks."""
        main.init_project_import(project.id)
        draft = main.submit_project_snapshot(project.id, {"apis": [{"path": "/a"}]})

        assert draft["next_suggested_step"] == "submit_project_snapshot"
        assert main.get_workflow_guide()["tips"]

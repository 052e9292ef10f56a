"""``specforge`` command line client for a SpecForge MCP server.

Configuration lives in ``.specforge-mcp.json``; a copy in the working
directory wins over the one in the home directory.

Usage::

    specforge connect --token TOKEN --project PROJECT_ID [--server URL]
    specforge handshake
    specforge tools
    specforge create-snapshot --roadmap-item ITEM_ID
    specforge post-snapshot --snapshot SNAPSHOT_ID --file env.json
    specforge import-project
    specforge verify
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("specforge.cli")

CONFIG_FILE = ".specforge-mcp.json"
DEFAULT_SERVER = "http://localhost:8081/mcp"


class CliError(Exception):
    pass


@dataclass
class CliConfig:
    mcp_server_url: str = DEFAULT_SERVER
    api_token: str = ""
    project_id: str = ""


def config_path() -> Path:
    local = Path(CONFIG_FILE)
    if local.exists():
        return local
    return Path.home() / CONFIG_FILE


def load_config() -> CliConfig:
    path = config_path()
    if not path.exists():
        return CliConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise CliError(f"failed to load config: {e}")
    return CliConfig(
        mcp_server_url=data.get("mcp_server_url") or DEFAULT_SERVER,
        api_token=data.get("api_token", ""),
        project_id=data.get("project_id", ""),
    )


def save_config(config: CliConfig) -> Path:
    path = Path(CONFIG_FILE)
    path.write_text(json.dumps(asdict(config), indent=2), encoding="utf-8")
    return path


class McpClient:
    """Minimal JSON-RPC client; a non-200 status or an RPC error is a failure."""

    def __init__(self, server_url: str, token: str, transport: Optional[httpx.BaseTransport] = None,
                 timeout: float = 30.0):
        self.server_url = server_url
        self.token = token
        self._client = httpx.Client(transport=transport, timeout=timeout)
        self._next_id = 0

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params or {}}
        headers = {"Authorization": f"Bearer {self.token}"}
        logger.debug(f"MCP call {method} -> {self.server_url}")
        try:
            resp = self._client.post(self.server_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise CliError(f"request failed: {e}")
        if resp.status_code != 200:
            raise CliError(f"server returned status {resp.status_code}: {resp.text}")
        try:
            body = resp.json()
        except ValueError as e:
            raise CliError(f"failed to parse RPC response: {e}")
        error = body.get("error")
        if error:
            raise CliError(f"RPC error ({error.get('code')}): {error.get('message')}")
        return body.get("result")

    def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        return self.call("tools/call", {"name": name, "arguments": arguments})

    def close(self) -> None:
        self._client.close()


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_connect(args: argparse.Namespace, client: McpClient, config: CliConfig) -> None:
    token = args.connect_token or args.token
    if not token or not args.project:
        raise CliError("--token and --project are required")
    server = args.connect_server or args.server or config.mcp_server_url
    config = CliConfig(mcp_server_url=server, api_token=token,
                       project_id=args.project)
    path = save_config(config)
    print(f"Configuration saved to {path}")
    client.server_url = config.mcp_server_url
    client.token = config.api_token
    cmd_handshake(args, client, config)


def cmd_handshake(args: argparse.Namespace, client: McpClient, config: CliConfig) -> None:
    result = client.call("initialize")
    info = (result or {}).get("serverInfo", {})
    print(f"Handshake successful: {info.get('name', 'unknown')} {info.get('version', '')}".rstrip())


def cmd_tools(args: argparse.Namespace, client: McpClient, config: CliConfig) -> None:
    result = client.call("tools/list") or {}
    print("Available Tools:")
    for tool in result.get("tools", []):
        print(f"  {tool.get('name')}: {tool.get('description', '')}")


def _project_id(args: argparse.Namespace, config: CliConfig) -> str:
    project_id = getattr(args, "project", None) or config.project_id
    if not project_id:
        raise CliError("no project configured; run `specforge connect` or pass --project")
    return project_id


def cmd_create_snapshot(args: argparse.Namespace, client: McpClient, config: CliConfig) -> None:
    result = client.call_tool("create_snapshot", {
        "project_id": _project_id(args, config),
        "roadmap_item_id": args.roadmap_item,
        "mode": args.mode,
    })
    print(f"Snapshot created:\n{_dump(result)}")


def cmd_post_snapshot(args: argparse.Namespace, client: McpClient, config: CliConfig) -> None:
    try:
        environment = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise CliError(f"could not read environment snapshot {args.file}: {e}")
    result = client.call_tool("post_snapshot", {
        "snapshot_id": args.snapshot,
        "environment_snapshot": environment,
    })
    print(f"Snapshot posted:\n{_dump(result)}")


def cmd_import_project(args: argparse.Namespace, client: McpClient, config: CliConfig) -> None:
    result = client.call_tool("init_project_import", {"project_id": _project_id(args, config)})
    print(f"Import started:\n{_dump(result)}")


def cmd_verify(args: argparse.Namespace, client: McpClient, config: CliConfig) -> None:
    cmd_handshake(args, client, config)


COMMANDS = {
    "connect": cmd_connect,
    "handshake": cmd_handshake,
    "tools": cmd_tools,
    "create-snapshot": cmd_create_snapshot,
    "post-snapshot": cmd_post_snapshot,
    "import-project": cmd_import_project,
    "verify": cmd_verify,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="specforge",
        description="SpecForge MCP client",
    )
    parser.add_argument("--server", help=f"MCP server URL (default: config or {DEFAULT_SERVER})")
    parser.add_argument("--token", default=os.getenv("SPECFORGE_TOKEN"), help="MCP token (env SPECFORGE_TOKEN)")
    sub = parser.add_subparsers(dest="command")

    connect = sub.add_parser("connect", help="Save server, token and project, then handshake")
    connect.add_argument("--server", dest="connect_server", help="MCP server URL")
    connect.add_argument("--token", dest="connect_token", help="MCP token")
    connect.add_argument("--project", help="Project ID")

    sub.add_parser("handshake", help="Check the connection to the MCP server")
    sub.add_parser("tools", help="List available MCP tools")

    create = sub.add_parser("create-snapshot", help="Open a reality snapshot for a roadmap item")
    create.add_argument("--project", help="Project ID (default: configured project)")
    create.add_argument("--roadmap-item", required=True, help="Roadmap item ID")
    create.add_argument("--mode", default="pre-implementation")

    post = sub.add_parser("post-snapshot", help="Submit an environment snapshot")
    post.add_argument("--snapshot", required=True, help="Snapshot ID returned by create-snapshot")
    post.add_argument("--file", required=True, help="Path to the environment snapshot JSON")

    imp = sub.add_parser("import-project", help="Start a project import session")
    imp.add_argument("--project", help="Project ID (default: configured project)")

    sub.add_parser("verify", help="Verify connection and authentication")
    sub.add_parser("help", help="Show this help message")
    return parser


def main(argv: Optional[List[str]] = None, transport: Optional[httpx.BaseTransport] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command in (None, "help"):
        parser.print_help()
        return 0

    try:
        config = load_config()
        server = args.server or config.mcp_server_url
        token = args.token or config.api_token
        client = McpClient(server, token, transport=transport)
        try:
            COMMANDS[args.command](args, client, config)
        finally:
            client.close()
    except CliError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

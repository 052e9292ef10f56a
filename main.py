"""MCP server exposing SpecForge reality-snapshot and project-import tools over stdio."""

from __future__ import annotations

from typing import Any, Dict, Optional, List

from mcp.server.fastmcp import FastMCP

from specforge.config import get_settings
from specforge.mcp_server import McpError, McpHandlers
from specforge.services import SpecForgeApp, build_container
from specforge.specforge_logging import initialize_default_logging

mcp = FastMCP("specforge")

_container: Optional[SpecForgeApp] = None


def _app() -> SpecForgeApp:
    global _container
    if _container is None:
        settings = get_settings()
        initialize_default_logging(settings.log_level, settings.log_file)
        _container = build_container(settings)
    return _container


def _handlers() -> McpHandlers:
    return _app().mcp_router.handlers


def _call(tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return _handlers().call(tool, arguments)
    except McpError as e:
        detail = f" ({e.data})" if e.data else ""
        raise ValueError(f"{e.message}{detail}") from e


def _drop_none(**kwargs: Any) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


@mcp.tool()
def create_snapshot(project_id: str, roadmap_item_id: str, mode: str = "pre-implementation") -> Dict[str, Any]:
    """STEP 1: Open a reality snapshot for a roadmap item.
    Returns the snapshot id together with the extraction requirements and the
    EnvironmentSnapshot schema the agent must fill in. An active snapshot for
    the same roadmap item is reused instead of creating a new one."""

    result = _call("create_snapshot", {"project_id": project_id, "roadmap_item_id": roadmap_item_id, "mode": mode})
    result.update({
        "next_suggested_step": "post_snapshot",
        "workflow_tip": "Next: Extract the environment described by required_schema and submit it with post_snapshot",
    })
    return result


@mcp.tool()
def post_snapshot(snapshot_id: str, environment_snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """STEP 2: Submit the extracted environment for analysis.
    Prerequisites: the snapshot must be awaiting a post (see create_snapshot)."""

    result = _call("post_snapshot", {"snapshot_id": snapshot_id, "environment_snapshot": environment_snapshot})
    result.update({
        "next_suggested_step": "get_snapshot_status",
        "workflow_tip": "Analysis is complete. Review the verdict, or check the lifecycle with get_snapshot_status",
    })
    return result


@mcp.tool()
def get_snapshot_status(snapshot_id: str) -> Dict[str, Any]:
    """Return the lifecycle state, transition history and analysis of a snapshot."""

    return _call("get_snapshot_status", {"snapshot_id": snapshot_id})


@mcp.tool()
def list_active_snapshots(project_id: Optional[str] = None) -> Dict[str, Any]:
    """List snapshots that have not reached a terminal state."""

    return _call("list_active_snapshots", _drop_none(project_id=project_id))


@mcp.resource("specforge://snapshots")
def resource_snapshots() -> str:
    """Resource view of active reality snapshots."""

    snapshots = _handlers().call("list_active_snapshots", {})["snapshots"]
    if not snapshots:
        return "No active snapshots."

    lines = ["SpecForge Active Snapshots"]
    for snapshot in snapshots:
        lines.append("")
        lines.append(f"- {snapshot['id']}: {snapshot['state']}")
        lines.append(f"  Roadmap item: {snapshot['roadmap_item_id']}")
    return "\n".join(lines)


@mcp.tool()
def init_project_import(
    project_id: str,
    language_stack: Optional[List[str]] = None,
    repository_type: Optional[str] = None,
    estimated_size: Optional[str] = None,
    import_mode: Optional[str] = None,
) -> Dict[str, Any]:
    """IMPORT STEP 1: Start a new project import session.
    Returns the required and optional catalogue categories, the document
    schema and the scaffold instructions for the first submission."""

    result = _call("init_project_import", _drop_none(
        project_id=project_id,
        language_stack=language_stack,
        repository_type=repository_type,
        estimated_size=estimated_size,
        import_mode=import_mode,
    ))
    result.update({
        "next_suggested_step": "submit_project_snapshot",
        "workflow_tip": "Next: Submit the project catalogue with submit_project_snapshot, one or more rounds",
    })
    return result


@mcp.tool()
def submit_project_snapshot(
    project_id: str,
    snapshot_payload: Dict[str, Any],
    final_submission: bool = False,
    self_assessment: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """IMPORT STEP 2: Submit one round of the project catalogue.
    Rounds are merged; the session locks once the completeness threshold is met."""

    result = _call("submit_project_snapshot", _drop_none(
        project_id=project_id,
        snapshot_payload=snapshot_payload,
        final_submission=final_submission,
        self_assessment=self_assessment,
    ))
    if result.get("catalog_state") == "locked":
        result.update({
            "next_suggested_step": "get_import_alignment_rules",
            "workflow_tip": "Catalogue accepted. Fetch the alignment rules before changing the codebase",
        })
    else:
        result.update({
            "next_suggested_step": "submit_project_snapshot",
            "workflow_tip": "Fill the missing categories and submit another round",
        })
    return result


@mcp.tool()
def get_import_alignment_rules(project_id: str) -> Dict[str, Any]:
    """IMPORT STEP 3: Derive alignment rules from the locked catalogue."""

    result = _call("get_import_alignment_rules", {"project_id": project_id})
    result.update({
        "next_suggested_step": "submit_post_import_snapshot",
        "workflow_tip": "Next: After aligning the codebase, submit a post-import snapshot for comparison",
    })
    return result


@mcp.tool()
def submit_post_import_snapshot(project_id: str, snapshot_payload: Dict[str, Any]) -> Dict[str, Any]:
    """IMPORT STEP 4: Compare the current codebase against the locked catalogue."""

    result = _call("submit_post_import_snapshot", {"project_id": project_id, "snapshot_payload": snapshot_payload})
    result.update({
        "next_suggested_step": "finalize_project_import",
        "workflow_tip": "Review the drift and conflicts, then finalize the import",
    })
    return result


@mcp.tool()
def finalize_project_import(project_id: str) -> Dict[str, Any]:
    """IMPORT STEP 5 (FINAL): Lock the import session and return the dashboard redirect.
    Only call once the post-import comparison has been reviewed."""

    return _call("finalize_project_import", {"project_id": project_id})


@mcp.tool()
def get_workflow_guide() -> Dict[str, Any]:
    """Get guidance on the snapshot and import workflows, schemas and examples."""

    guide = _call("help", {})
    guide["tips"] = [
        "Always create a snapshot before posting environment data",
        "Reuse the snapshot id returned by create_snapshot for every later call",
        "Import rounds are merged, so only send what changed",
        "Finalizing an import locks the catalogue for good",
    ]
    return guide


if __name__ == "__main__":
    mcp.run(transport="stdio")

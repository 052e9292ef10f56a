"""Reality snapshots: environment extractions exchanged with coding agents.

A snapshot moves through a fixed lifecycle::

    initiated -> awaiting_post -> analyzing -> completed | failed

Every transition is checked against that table and recorded on the snapshot.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidIdError, InvalidRequestError, InvalidTransitionError
from .models import EnvironmentSnapshot, Project, RealitySnapshot, RoadmapItem, is_uuid, utcnow
from .specforge_logging import log_error_with_context, log_snapshot_transition
from .storage import Repository

logger = logging.getLogger("specforge.reality")

INITIATED = "initiated"
AWAITING_POST = "awaiting_post"
ANALYZING = "analyzing"
COMPLETED = "completed"
FAILED = "failed"

LEGAL_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    INITIATED: (AWAITING_POST,),
    AWAITING_POST: (ANALYZING,),
    ANALYZING: (COMPLETED, FAILED),
    COMPLETED: (),
    FAILED: (),
}

NEXT_STEPS = {
    INITIATED: "collect_and_post_snapshot",
    AWAITING_POST: "post_snapshot",
    ANALYZING: "wait_for_analysis",
    COMPLETED: "none",
    FAILED: "none",
}

EXTRACTION_REQUIREMENTS = {
    "file_tree": "full",
    "dependencies": True,
    "api_routes": True,
    "database_migrations": True,
    "middleware_stack": True,
    "test_runner": True,
    "ci_config": True,
}

DEPENDENCY_INTEGRITY = 0.9
STRUCTURAL_ALIGNMENT = 0.8


def environment_snapshot_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "metadata": {"type": "object"},
            "file_tree": {"type": "array", "items": {"type": "string"}},
            "dependencies": {"type": "object"},
            "environment": {"type": "object"},
            "api_routes": {"type": "array"},
            "database": {
                "type": "object",
                "properties": {
                    "migrations": {"type": "array", "items": {"type": "string"}},
                    "detected_tables": {"type": "array", "items": {"type": "string"}},
                },
            },
            "middleware_stack": {"type": "array"},
            "test_framework": {"type": "object"},
            "ci_config": {"type": "object"},
            "exports_surface": {"type": "array"},
        },
    }


class SnapshotStateMachine:
    def can_transition(self, current: str, target: str) -> bool:
        return target in LEGAL_TRANSITIONS.get(current, ())

    def check(self, current: str, target: str) -> None:
        if not self.can_transition(current, target):
            raise InvalidTransitionError(current, target)

    def next_step(self, state: str) -> str:
        return NEXT_STEPS.get(state, "unknown")


def score_environment(env: EnvironmentSnapshot) -> Tuple[Dict[str, float], str]:
    """Conformance from the presence of file tree, routes and migrations."""
    conformance = 0.0
    if env.file_tree:
        conformance += 0.4
    if env.api_routes:
        conformance += 0.3
    if env.migrations:
        conformance += 0.3
    conformance = round(conformance, 2)
    scores = {
        "reality_conformance": conformance,
        "dependency_integrity": DEPENDENCY_INTEGRITY,
        "structural_alignment": STRUCTURAL_ALIGNMENT,
    }
    if conformance >= 0.7:
        verdict = "approved"
    elif conformance >= 0.4:
        verdict = "requires_review"
    else:
        verdict = "failed"
    return scores, verdict


class RealitySnapshotService:
    def __init__(self, repository: Repository, state_machine: Optional[SnapshotStateMachine] = None):
        self.repository = repository
        self.state_machine = state_machine or SnapshotStateMachine()

    def _transition(self, snapshot: RealitySnapshot, target: str) -> None:
        self.state_machine.check(snapshot.state, target)
        previous = snapshot.state
        snapshot.state = target
        snapshot.updated_at = utcnow()
        snapshot.transitions.append({"from": previous, "to": target, "at": snapshot.updated_at})
        self.repository.save(snapshot)
        log_snapshot_transition(snapshot.id, previous, target, project_id=snapshot.project_id)

    def _require(self, snapshot_id: str) -> RealitySnapshot:
        if not is_uuid(snapshot_id):
            raise InvalidIdError("Invalid snapshot_id", details=str(snapshot_id))
        return self.repository.require(RealitySnapshot, snapshot_id)

    def create_snapshot(self, project_id: str, roadmap_item_id: str, mode: str = "pre-implementation") -> Dict[str, Any]:
        if not is_uuid(project_id):
            raise InvalidIdError("Invalid project_id", details=str(project_id))
        if not is_uuid(roadmap_item_id):
            raise InvalidIdError("Invalid roadmap_item_id", details=str(roadmap_item_id))
        self.repository.require(Project, project_id)
        item = self.repository.require(RoadmapItem, roadmap_item_id)
        if item.project_id != project_id:
            raise InvalidRequestError("roadmap item does not belong to project", details=roadmap_item_id)

        for existing in self.repository.list_reality_snapshots(project_id):
            if existing.roadmap_item_id == roadmap_item_id and existing.is_active():
                logger.info(f"Reusing active snapshot {existing.id} for roadmap item {roadmap_item_id}")
                return self._creation_response(existing, reused=True)

        snapshot = RealitySnapshot(project_id=project_id, roadmap_item_id=roadmap_item_id,
                                   mode=mode or "pre-implementation")
        self.repository.save(snapshot)
        self._transition(snapshot, AWAITING_POST)
        return self._creation_response(snapshot, reused=False)

    def _creation_response(self, snapshot: RealitySnapshot, reused: bool) -> Dict[str, Any]:
        return {
            "snapshot_id": snapshot.id,
            "state": snapshot.state,
            "reused": reused,
            "extraction_requirements": dict(EXTRACTION_REQUIREMENTS),
            "required_schema": environment_snapshot_schema(),
            "strict_next_step": self.state_machine.next_step(INITIATED),
        }

    def post_snapshot(self, snapshot_id: str, environment_snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        snapshot = self._require(snapshot_id)
        if not isinstance(environment_snapshot, dict):
            raise InvalidRequestError("environment_snapshot must be an object")
        self._transition(snapshot, ANALYZING)

        try:
            env = EnvironmentSnapshot.from_dict(environment_snapshot)
            scores, verdict = score_environment(env)
        except Exception as e:
            log_error_with_context(e, {"operation": "post_snapshot", "snapshot_id": snapshot_id})
            snapshot.analysis = {"error": str(e)}
            self._transition(snapshot, FAILED)
            raise InvalidRequestError("snapshot analysis failed", details=str(e))

        snapshot.environment_snapshot = env.to_dict()
        snapshot.analysis = {
            "snapshot_id": snapshot.id,
            "scores": scores,
            "verdict": verdict,
            "drift_detected": False,
        }
        self._transition(snapshot, FAILED if verdict == "failed" else COMPLETED)
        return {
            "snapshot_id": snapshot.id,
            "analysis_results": {"drift_detected": False},
            "scores": scores,
            "verdict": verdict,
            "required_next_tool": "none",
        }

    def get_snapshot_status(self, snapshot_id: str) -> Dict[str, Any]:
        snapshot = self._require(snapshot_id)
        return {
            "snapshot_id": snapshot.id,
            "state": snapshot.state,
            "next_step": self.state_machine.next_step(snapshot.state),
            "transitions": list(snapshot.transitions),
            "analysis": snapshot.analysis,
        }

    def list_active_snapshots(self, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if project_id and not is_uuid(project_id):
            raise InvalidIdError("Invalid project_id", details=str(project_id))
        return [
            {
                "id": s.id,
                "project_id": s.project_id,
                "roadmap_item_id": s.roadmap_item_id,
                "state": s.state,
                "created_at": s.created_at,
                "updated_at": s.updated_at,
            }
            for s in self.repository.list_reality_snapshots(project_id or None)
            if s.is_active()
        ]

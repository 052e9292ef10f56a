"""Iterative project catalogue import.

An external agent documents an existing codebase across several rounds.
Each round appends an ``ImportArtifact``; the merged view of every artifact
in the session is re-scored for completeness until the session locks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .alignment import AlignmentService
from .drift_service import compare_project_snapshot
from .errors import EmptySnapshotError, ImportSessionLockedError, InvalidIdError, NotFoundError
from .models import ImportArtifact, ImportSession, Project, is_uuid, utcnow
from .specforge_logging import log_import_submission, log_operation
from .storage import Repository

logger = logging.getLogger("specforge.importer")

REQUIRED_CATEGORIES = (
    "project_overview",
    "tech_stack",
    "modules",
    "apis",
    "data_models",
    "contracts",
    "risks",
    "change_sensitivity",
)
OPTIONAL_CATEGORIES = ("validation_rules", "current_state")

FULL_ARRAY_SIZE = 5
AUTO_LOCK_THRESHOLD = 95

SCAFFOLD_INSTRUCTIONS = (
    "Document the codebase as structured JSON files under `.specforge/` (for example contracts.json "
    "and architecture.json), one file per category. Submit them in batches with submit_project_snapshot, "
    "read each response for missing categories, and keep submitting until the catalogue is complete."
)

ALIGNMENT_RULES: Dict[str, Any] = {
    "strict_rules": [
        "No new API routes without contract definition",
        "All database changes must include migration script",
    ],
    "forbidden_actions": [
        "Direct mutation of global state without variable tracking",
    ],
    "required_snapshot_policy": {
        "must_create_snapshot_before_changes": True,
        "must_post_snapshot_after_changes": True,
    },
    "alignment_constraints": {
        "layer_isolation": True,
        "contract_locking": True,
    },
}


@dataclass(slots=True)
class CompletenessResult:
    score: int
    missing_categories: List[str] = field(default_factory=list)
    unresolved_references: List[str] = field(default_factory=list)
    prompt: str = ""


def category_fraction(value: Any) -> float:
    """0 when absent, count/5 for short arrays, 1.0 for full arrays.

    Maps, strings and other scalars count only when they are not empty or
    zero, so ``false`` and ``0`` leave the category missing.
    """
    if value is None:
        return 0.0
    if isinstance(value, list):
        return min(len(value), FULL_ARRAY_SIZE) / FULL_ARRAY_SIZE
    return 1.0 if value else 0.0


def score_completeness(documents: Dict[str, Any]) -> CompletenessResult:
    fractions = [category_fraction(documents.get(name)) for name in REQUIRED_CATEGORIES]
    missing = [name for name, frac in zip(REQUIRED_CATEGORIES, fractions) if frac == 0.0]
    result = CompletenessResult(
        score=int(round(sum(fractions) / len(REQUIRED_CATEGORIES) * 100)),
        missing_categories=missing,
    )
    if missing:
        result.unresolved_references.append("Cannot resolve cross-references for missing categories")
        result.prompt = "Are there any additional undocumented items for the missing categories?"
    else:
        result.prompt = "All categories are documented."
    return result


def merge_payloads(payloads: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Concatenate arrays in arrival order; shallow-merge maps; later scalars win.

    Inputs are never mutated.
    """
    merged: Dict[str, Any] = {}
    for payload in payloads:
        for key, value in payload.items():
            existing = merged.get(key)
            if isinstance(value, list) and isinstance(existing, list):
                merged[key] = existing + value
            elif isinstance(value, dict) and isinstance(existing, dict):
                merged[key] = {**existing, **value}
            elif isinstance(value, list):
                merged[key] = list(value)
            elif isinstance(value, dict):
                merged[key] = dict(value)
            else:
                merged[key] = value
    return merged


class ImportService:
    """Session-scoped catalogue import driven over MCP."""

    def __init__(self, repository: Repository, alignment: Optional[AlignmentService] = None):
        self.repository = repository
        self.alignment = alignment

    def _project(self, project_id: str) -> Project:
        if not is_uuid(project_id):
            raise InvalidIdError("invalid project_id", details=str(project_id))
        return self.repository.require(Project, project_id)

    def _latest_session(self, project_id: str) -> ImportSession:
        session = self.repository.latest_import_session(project_id)
        if session is None:
            raise NotFoundError("no active import session found for project", details=project_id)
        return session

    def init_project_import(self, project_id: str, **hints: Any) -> Dict[str, Any]:
        self._project(project_id)
        session = self.repository.save(ImportSession(project_id=project_id))
        logger.info(f"Import session {session.id} started for project {project_id}")
        return {
            "status": "initialized",
            "session_id": session.id,
            "required_documents": list(REQUIRED_CATEGORIES),
            "optional_documents": list(OPTIONAL_CATEGORIES),
            "document_schema": {
                "type": "object",
                "properties": {
                    "project_overview": {"type": "object"},
                    "tech_stack": {"type": "object"},
                    "modules": {"type": "array"},
                    "apis": {"type": "array"},
                    "data_models": {"type": "array"},
                    "contracts": {"type": "array"},
                    "risks": {"type": "array"},
                    "change_sensitivity": {"type": "array"},
                    "validation_rules": {"type": "array"},
                    "current_state": {"type": "object"},
                },
            },
            "scaffold_instructions": SCAFFOLD_INSTRUCTIONS,
            "submission_protocol": {"incremental": True, "requires_self_assessment": True},
            "import_hints": {k: v for k, v in hints.items() if v},
        }

    def submit_project_snapshot(self, project_id: str, snapshot_payload: Optional[Dict[str, Any]],
                                final_submission: bool = False,
                                self_assessment: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._project(project_id)
        session = self._latest_session(project_id)
        if session.locked:
            raise ImportSessionLockedError()
        if not snapshot_payload:
            raise EmptySnapshotError()

        with log_operation("submit_project_snapshot", session_id=session.id), self.repository.transaction():
            self.repository.save(ImportArtifact(
                session_id=session.id,
                payload=dict(snapshot_payload),
                self_assessment=dict(self_assessment or {}),
                final_submission=final_submission,
                iteration=session.iteration_count + 1,
            ))
            artifacts = self.repository.list_import_artifacts(session.id)
            merged = merge_payloads([a.payload for a in artifacts])
            result = score_completeness(merged)

            session.iteration_count += 1
            # a later scalar can replace a longer array; the session score only ratchets up
            session.completeness_score = max(session.completeness_score, result.score)
            if final_submission and session.completeness_score >= AUTO_LOCK_THRESHOLD:
                session.lock()
            session.updated_at = utcnow()
            self.repository.save(session)

        log_import_submission(session.id, session.completeness_score, session.iteration_count,
                              locked=session.locked)
        return {
            "status": "accepted",
            "session_id": session.id,
            "iteration": session.iteration_count,
            "completeness_score": session.completeness_score,
            "missing_categories": result.missing_categories,
            "unresolved_references": result.unresolved_references,
            "self_assessment_prompt": result.prompt,
            "requires_additional_submission": not session.locked,
            "catalog_state": "locked" if session.locked else "draft",
            "project_import_status": session.status,
            "merged_categories": {k: len(v) if isinstance(v, (list, dict)) else 1 for k, v in merged.items()},
        }

    def merged_catalogue(self, project_id: str) -> Dict[str, Any]:
        session = self._latest_session(project_id)
        return merge_payloads([a.payload for a in self.repository.list_import_artifacts(session.id)])

    def get_import_alignment_rules(self, project_id: str) -> Dict[str, Any]:
        self._project(project_id)
        return {
            "strict_rules": list(ALIGNMENT_RULES["strict_rules"]),
            "forbidden_actions": list(ALIGNMENT_RULES["forbidden_actions"]),
            "required_snapshot_policy": dict(ALIGNMENT_RULES["required_snapshot_policy"]),
            "alignment_constraints": dict(ALIGNMENT_RULES["alignment_constraints"]),
        }

    def submit_post_import_snapshot(self, project_id: str, snapshot_payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        project = self._project(project_id)
        snapshot = dict(snapshot_payload or {})
        drift = compare_project_snapshot(snapshot)

        alignment_delta = 0.0
        critical = 0
        if self.alignment is not None:
            report = self.alignment.analyze_snapshot(snapshot)
            alignment_delta = (report.score - project.alignment_score) / 100.0
            critical = sum(1 for c in report.conflicts if c.severity == "CRITICAL")

        recommendation = "approve"
        if critical or drift.risk_score >= 30:
            recommendation = "review"
        logger.info(f"Post-import snapshot for {project_id}: risk={drift.risk_score} recommendation={recommendation}")
        return {
            "drift_score": int(drift.risk_score),
            "contract_breakage_detected": bool(drift.breaking_changes),
            "breaking_changes": [c.to_dict() for c in drift.breaking_changes],
            "risk_delta": drift.risk_score / 10.0,
            "alignment_delta": alignment_delta,
            "recommendation": recommendation,
        }

    def finalize_project_import(self, project_id: str) -> Dict[str, Any]:
        self._project(project_id)
        session = self._latest_session(project_id)
        session.lock()
        self.repository.save(session)
        log_import_submission(session.id, session.completeness_score, session.iteration_count, finalized=True)
        return {
            "status": "finalized",
            "session_id": session.id,
            "completeness_score": session.completeness_score,
            "redirect_url": f"/projects/{project_id}/dashboard",
        }

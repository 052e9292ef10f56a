"""Data models for SpecForge.

This module contains the core data structures used throughout SpecForge:
the specification graph (projects, roadmap items, contracts, variables,
requirements, validation rules, dependencies), the derived analysis records
(alignment reports, feature intelligence), and the session records driven by
the import, refinement and reality-snapshot protocols.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


# ----------------------------------------------------------------------
# Enumerations
# ----------------------------------------------------------------------

ROLES = ("OWNER", "ADMIN", "REVIEWER", "ENGINEER", "AI_AGENT")

ROADMAP_ITEM_TYPES = ("EPIC", "FEATURE", "TASK", "BUGFIX", "REFACTOR")
ROADMAP_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")
ROADMAP_STATUSES = ("DRAFT", "IN_REVIEW", "APPROVED", "IN_PROGRESS", "COMPLETE")
ACTIVE_ROADMAP_STATUSES = ("IN_PROGRESS", "COMPLETE")
RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")

CONTRACT_TYPES = ("REST", "GRAPHQL", "CLI", "INTERNAL_FUNCTION", "EVENT")
DEPENDENCY_TYPES = ("DIRECT", "DERIVED", "CONTRACT")

PROPOSAL_TYPES = ("EDIT_DESCRIPTION", "MODIFY_SCHEMA", "ADD_VARIABLE", "REMOVE_FIELD")
PROPOSAL_STATUSES = ("PENDING", "APPROVED", "REJECTED")

CONFLICT_SEVERITIES = ("CRITICAL", "ERROR", "WARNING", "INFO")
CONFLICT_TYPES = ("DEPENDENCY_LOOP", "SCHEMA_MISMATCH", "CONTRACT_COLLISION", "LOGIC_CONTRADICTION")

IMPORT_STATUSES = ("partial", "complete")

SNAPSHOT_STATES = ("initiated", "awaiting_post", "analyzing", "completed", "failed")
TERMINAL_SNAPSHOT_STATES = ("completed", "failed")

REFINEMENT_STATUSES = ("IN_PROGRESS", "VALIDATED", "FAILED", "APPROVED")
REFINEMENT_EVENT_TYPES = ("INFO", "STEP", "ITERATION_START", "WARN", "SUCCESS", "ERROR")


class RecordMixin:
    """Dictionary conversion shared by the persisted records."""

    __slots__ = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create from dictionary representation, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# ----------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------


@dataclass(slots=True)
class Principal:
    """Authenticated identity injected into a request."""

    user_id: str
    workspace_id: str
    role: str

    def to_dict(self) -> Dict[str, str]:
        return {"user_id": self.user_id, "workspace_id": self.workspace_id, "role": self.role}

    def has_role(self, *roles: str) -> bool:
        return self.role in roles


@dataclass(slots=True)
class McpToken(RecordMixin):
    """Project-scoped MCP access token; only the hash of the secret is kept."""

    project_id: str
    name: str
    token_prefix: str
    token_hash: str
    id: str = field(default_factory=new_id)
    revoked: bool = False
    last_used_at: Optional[str] = None
    created_at: str = field(default_factory=utcnow)

    def public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("token_hash")
        return data


# ----------------------------------------------------------------------
# Specification graph
# ----------------------------------------------------------------------


@dataclass(slots=True)
class Project(RecordMixin):
    name: str
    workspace_id: str = ""
    description: str = ""
    settings: Dict[str, Any] = field(default_factory=dict)
    mcp_settings: Dict[str, Any] = field(default_factory=dict)
    alignment_score: int = 100
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def self_evaluation_enabled(self) -> bool:
        """Return True when the project opts into refinement self-critique."""
        flag = self.settings.get("enable_self_evaluation")
        if isinstance(flag, bool):
            return flag
        if isinstance(flag, str):
            return flag.strip().lower() == "true"
        if isinstance(flag, (int, float)):
            return flag != 0
        return False


@dataclass(slots=True)
class RoadmapItem(RecordMixin):
    """A unit of planned work owning contracts, requirements and snapshots."""

    project_id: str
    title: str
    type: str = "FEATURE"
    description: str = ""
    business_context: str = ""
    technical_context: str = ""
    priority: str = "MEDIUM"
    status: str = "DRAFT"
    risk_level: str = "LOW"
    readiness_level: int = 0
    breaking_change: bool = False
    regression_sensitive: bool = False
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def validate(self) -> List[str]:
        """Validate the roadmap item and return any issues."""
        issues = []
        if not self.title or not self.title.strip():
            issues.append("Title is required")
        if self.type not in ROADMAP_ITEM_TYPES:
            issues.append(f"Type must be one of: {', '.join(ROADMAP_ITEM_TYPES)}")
        if self.priority not in ROADMAP_PRIORITIES:
            issues.append(f"Priority must be one of: {', '.join(ROADMAP_PRIORITIES)}")
        if self.status not in ROADMAP_STATUSES:
            issues.append(f"Status must be one of: {', '.join(ROADMAP_STATUSES)}")
        if self.risk_level not in RISK_LEVELS:
            issues.append(f"Risk level must be one of: {', '.join(RISK_LEVELS)}")
        return issues


@dataclass(slots=True)
class ContractDefinition(RecordMixin):
    roadmap_item_id: str
    contract_type: str = "REST"
    version: str = "1.0.0"
    input_schema: Dict[str, Any] = field(default_factory=dict)
    output_schema: Dict[str, Any] = field(default_factory=dict)
    error_schema: Dict[str, Any] = field(default_factory=dict)
    backward_compatible: bool = True
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def validate(self) -> List[str]:
        issues = []
        if self.contract_type not in CONTRACT_TYPES:
            issues.append(f"Contract type must be one of: {', '.join(CONTRACT_TYPES)}")
        if not self.version:
            issues.append("Version is required")
        return issues


@dataclass(slots=True)
class VariableDefinition(RecordMixin):
    """A typed named value bound to a contract."""

    contract_id: str
    name: str
    project_id: str = ""
    type: str = "string"
    required: bool = False
    default_value: Any = None
    description: str = ""
    validation_rules: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)

    def validate(self) -> List[str]:
        return [] if self.name and self.name.strip() else ["Variable name is required"]


@dataclass(slots=True)
class ValidationRule(RecordMixin):
    project_id: str
    name: str
    rule_type: str = "CUSTOM"
    description: str = ""
    rule_config: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class Requirement(RecordMixin):
    roadmap_item_id: str
    title: str
    acceptance_criteria: str = ""
    testable: bool = False
    priority: str = "MEDIUM"
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class RoadmapDependency(RecordMixin):
    """Directed edge between roadmap items; cycles are allowed and reported."""

    project_id: str
    source_id: str
    target_id: str
    dependency_type: str = "DIRECT"
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class VersionSnapshot(RecordMixin):
    """Immutable capture of a roadmap item, content-addressed by hash."""

    roadmap_item_id: str
    snapshot_data: Dict[str, Any]
    hash: str = ""
    created_by: str = ""
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class AiProposal(RecordMixin):
    roadmap_item_id: str
    proposal_type: str
    diff: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""
    confidence_score: float = 0.0
    status: str = "PENDING"
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class AuditLog(RecordMixin):
    entity_type: str
    entity_id: str
    action: str
    performed_by: str = ""
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class LlmConfig(RecordMixin):
    project_id: str
    provider: str = "openai"
    model: str = ""
    api_key: str = ""
    base_url: str = ""
    id: str = field(default_factory=new_id)
    updated_at: str = field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Analysis records
# ----------------------------------------------------------------------


@dataclass(slots=True)
class AlignmentConflict(RecordMixin):
    severity: str
    type: str
    description: str
    source_id: str = ""
    target_id: str = ""
    remediation: str = ""
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class AlignmentReport:
    """Project-wide consistency verdict; only the newest one is consulted."""

    project_id: str
    score: int = 100
    conflicts: List[AlignmentConflict] = field(default_factory=list)
    overlaps: List[str] = field(default_factory=list)
    missing_dependencies: List[str] = field(default_factory=list)
    circular_dependencies: List[str] = field(default_factory=list)
    recommended_resolutions: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "score": self.score,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "overlaps": list(self.overlaps),
            "missing_dependencies": list(self.missing_dependencies),
            "circular_dependencies": list(self.circular_dependencies),
            "recommended_resolutions": list(self.recommended_resolutions),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlignmentReport":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            score=data.get("score", 100),
            conflicts=[AlignmentConflict.from_dict(c) for c in data.get("conflicts", [])],
            overlaps=data.get("overlaps", []),
            missing_dependencies=data.get("missing_dependencies", []),
            circular_dependencies=data.get("circular_dependencies", []),
            recommended_resolutions=data.get("recommended_resolutions", []),
            created_at=data.get("created_at", utcnow()),
        )

    def conflicts_of(self, conflict_type: str) -> List[AlignmentConflict]:
        return [c for c in self.conflicts if c.type == conflict_type]


@dataclass(slots=True)
class FeatureIntelligence(RecordMixin):
    """Weighted specification-quality score for one feature."""

    roadmap_item_id: str
    completeness_score: int = 0
    contract_integrity_score: int = 0
    variable_coverage_score: int = 0
    test_coverage_score: int = 0
    dependency_stability_score: int = 100
    drift_risk_score: int = 100
    llm_confidence_score: int = 100
    overall_score: int = 0
    updated_at: str = field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return self.roadmap_item_id


@dataclass(slots=True)
class DriftCheckRecord(RecordMixin):
    """Outcome of one contract-vs-snapshot drift check."""

    roadmap_item_id: str
    contract_id: str
    snapshot_id: str
    risk_score: float
    changes: List[Dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Import protocol
# ----------------------------------------------------------------------


@dataclass(slots=True)
class ImportSession(RecordMixin):
    project_id: str
    status: str = "partial"
    completeness_score: int = 0
    iteration_count: int = 0
    locked: bool = False
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def lock(self) -> None:
        self.locked = True
        self.status = "complete"
        self.updated_at = utcnow()


@dataclass(slots=True)
class ImportArtifact(RecordMixin):
    """Append-only submission within an import session."""

    session_id: str
    payload: Dict[str, Any]
    self_assessment: Dict[str, Any] = field(default_factory=dict)
    final_submission: bool = False
    iteration: int = 0
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Reality snapshots
# ----------------------------------------------------------------------


@dataclass(slots=True)
class EnvironmentSnapshot:
    """Structured environment extraction posted by an agent."""

    file_tree: List[str] = field(default_factory=list)
    api_routes: List[Dict[str, Any]] = field(default_factory=list)
    migrations: List[str] = field(default_factory=list)
    detected_tables: List[str] = field(default_factory=list)
    dependencies: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)
    middleware_stack: List[str] = field(default_factory=list)
    test_framework: Dict[str, Any] = field(default_factory=dict)
    ci_config: Dict[str, Any] = field(default_factory=dict)
    exports_surface: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentSnapshot":
        database = data.get("database") or {}
        return cls(
            file_tree=list(data.get("file_tree") or []),
            api_routes=list(data.get("api_routes") or []),
            migrations=list(database.get("migrations") or []),
            detected_tables=list(database.get("detected_tables") or []),
            dependencies=dict(data.get("dependencies") or {}),
            environment=dict(data.get("environment") or {}),
            middleware_stack=list(data.get("middleware_stack") or []),
            test_framework=dict(data.get("test_framework") or {}),
            ci_config=dict(data.get("ci_config") or {}),
            exports_surface=list(data.get("exports_surface") or []),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.metadata,
            "file_tree": self.file_tree,
            "dependencies": self.dependencies,
            "environment": self.environment,
            "api_routes": self.api_routes,
            "database": {"migrations": self.migrations, "detected_tables": self.detected_tables},
            "middleware_stack": self.middleware_stack,
            "test_framework": self.test_framework,
            "ci_config": self.ci_config,
            "exports_surface": self.exports_surface,
        }


@dataclass(slots=True)
class RealitySnapshot(RecordMixin):
    project_id: str
    roadmap_item_id: str
    mode: str = "pre-implementation"
    state: str = "initiated"
    environment_snapshot: Optional[Dict[str, Any]] = None
    analysis: Optional[Dict[str, Any]] = None
    transitions: List[Dict[str, str]] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def is_active(self) -> bool:
        return self.state not in TERMINAL_SNAPSHOT_STATES


# ----------------------------------------------------------------------
# Refinement
# ----------------------------------------------------------------------


@dataclass(slots=True)
class RefinementSession(RecordMixin):
    project_id: str
    target_type: str
    initial_prompt: str
    context_data: Optional[Dict[str, Any]] = None
    roadmap_item_id: Optional[str] = None
    status: str = "IN_PROGRESS"
    max_iterations: int = 3
    current_iteration: int = 0
    result: Optional[Any] = None
    confidence: float = 0.0
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def is_terminal(self) -> bool:
        return self.status in ("FAILED", "APPROVED")


@dataclass(slots=True)
class RefinementIteration(RecordMixin):
    session_id: str
    iteration: int
    prompt: str
    raw_response: str = ""
    artifact: Optional[Any] = None
    validation_errors: List[str] = field(default_factory=list)
    critique: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utcnow)


@dataclass(slots=True)
class RefinementEvent:
    """One typed event on a refinement session's stream."""

    type: str
    message: str
    iteration: int = 0
    data: Optional[Any] = None
    timestamp: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "type": self.type,
            "message": self.message,
            "iteration": self.iteration,
            "timestamp": self.timestamp,
        }
        if self.data is not None:
            event["data"] = self.data
        return event

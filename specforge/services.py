"""Service layer for the specification graph.

Every mutation is persisted first. Afterwards the service writes an audit
record, recomputes feature intelligence for the affected roadmap item and
runs a project alignment check. Those follow-ups are best-effort: a failure
is logged and the primary mutation stands.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .alignment import AlignmentService
from .audit import AuditService
from .auth import JwtValidator, McpTokenService
from .config import Settings, get_settings
from .drift_service import DriftService
from .errors import GovernanceError, InvalidBodyError, InvalidRequestError, MissingFieldError
from .importer import ImportService
from .intelligence import FeatureIntelligenceService, GovernanceService
from .llm import LlmClient, LlmSettingsService, build_client
from .models import (
    ACTIVE_ROADMAP_STATUSES,
    DEPENDENCY_TYPES,
    PROPOSAL_TYPES,
    AiProposal,
    ContractDefinition,
    FeatureIntelligence,
    LlmConfig,
    Project,
    Requirement,
    RoadmapDependency,
    RoadmapItem,
    ValidationRule,
    VariableDefinition,
    VersionSnapshot,
    utcnow,
)
from .notifications import NotificationService
from .reality import RealitySnapshotService
from .refinement import RefinementOrchestrator
from .specforge_logging import log_error_with_context, log_operation, observability_hooks
from .storage import Repository, build_repository

logger = logging.getLogger("specforge.services")


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(data: Any) -> str:
    """sha256 hex digest of the canonical JSON serialisation."""
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def _apply(record: Any, changes: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    """Copy the allowed, non-None fields from ``changes`` onto ``record``.

    Returns the previous values of the fields that were touched.
    """
    previous: Dict[str, Any] = {}
    for name in allowed:
        if name in changes and changes[name] is not None:
            previous[name] = getattr(record, name)
            setattr(record, name, changes[name])
    return previous


class GraphService:
    """Shared post-commit side effects for the graph services."""

    def __init__(self, repository: Repository, audit: AuditService,
                 intelligence: Optional[FeatureIntelligenceService] = None,
                 alignment: Optional[AlignmentService] = None):
        self.repository = repository
        self.audit = audit
        self.intelligence = intelligence
        self.alignment = alignment

    def _recompute(self, roadmap_item_id: Optional[str]) -> None:
        if self.intelligence is None or not roadmap_item_id:
            return
        try:
            self.intelligence.calculate_feature_score(roadmap_item_id)
        except Exception as e:
            log_error_with_context(e, {"operation": "calculate_feature_score", "roadmap_item_id": roadmap_item_id})

    def _realign(self, project_id: Optional[str]) -> None:
        if self.alignment is None or not project_id:
            return
        try:
            self.alignment.trigger_alignment_check(project_id)
        except Exception as e:
            log_error_with_context(e, {"operation": "trigger_alignment_check", "project_id": project_id})

    def _after_commit(self, project_id: Optional[str], roadmap_item_id: Optional[str] = None) -> None:
        self._recompute(roadmap_item_id)
        self._realign(project_id)

    def _project_of_item(self, roadmap_item_id: str) -> Optional[str]:
        item = self.repository.get(RoadmapItem, roadmap_item_id)
        return item.project_id if item is not None else None


# ----------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------

class ProjectService(GraphService):
    PROJECT_FIELDS = ("name", "description", "settings", "mcp_settings")

    def create_project(self, name: str, workspace_id: str = "", description: str = "",
                       settings: Optional[Dict[str, Any]] = None, user_id: str = "") -> Project:
        if not name or not name.strip():
            raise MissingFieldError("name is required")
        project = self.repository.save(Project(
            name=name.strip(),
            workspace_id=workspace_id,
            description=description,
            settings=dict(settings or {}),
        ))
        self.audit.log("project", project.id, "CREATE", user_id, None, {"name": project.name})
        logger.info(f"Project {project.id} created")
        return project

    def get_project(self, project_id: str) -> Project:
        return self.repository.require(Project, project_id)

    def list_projects(self, workspace_id: Optional[str] = None) -> List[Project]:
        if workspace_id:
            return self.repository.all(Project, lambda p: p.workspace_id == workspace_id)
        return self.repository.all(Project)

    def update_project(self, project_id: str, user_id: str = "", **changes: Any) -> Project:
        project = self.get_project(project_id)
        previous = _apply(project, changes, self.PROJECT_FIELDS)
        project.updated_at = utcnow()
        self.repository.save(project)
        self.audit.log("project", project_id, "UPDATE", user_id, previous,
                       {k: changes[k] for k in previous})
        return project

    def delete_project(self, project_id: str, user_id: str = "") -> None:
        project = self.get_project(project_id)
        self.repository.delete(Project, project_id)
        self.audit.log("project", project_id, "DELETE", user_id, {"name": project.name}, None)


# ----------------------------------------------------------------------
# Roadmap items
# ----------------------------------------------------------------------

class RoadmapService(GraphService):
    ITEM_FIELDS = (
        "title", "type", "description", "business_context", "technical_context", "priority",
        "risk_level", "readiness_level", "breaking_change", "regression_sensitive",
    )

    def __init__(self, repository: Repository, audit: AuditService,
                 intelligence: Optional[FeatureIntelligenceService] = None,
                 alignment: Optional[AlignmentService] = None,
                 governance: Optional[GovernanceService] = None):
        super().__init__(repository, audit, intelligence, alignment)
        self.governance = governance

    def get_item(self, item_id: str) -> RoadmapItem:
        return self.repository.require(RoadmapItem, item_id)

    def list_items(self, project_id: str) -> List[RoadmapItem]:
        return self.repository.list_roadmap_items(project_id)

    def create_item(self, item: RoadmapItem, user_id: str = "") -> RoadmapItem:
        self.repository.require(Project, item.project_id)
        issues = item.validate()
        if issues:
            raise InvalidBodyError("invalid roadmap item", details="; ".join(issues))
        self.repository.save(item)
        self.audit.log("roadmap_item", item.id, "CREATE", user_id, None, {"title": item.title})
        self._after_commit(item.project_id, item.id)
        return item

    def check_transition(self, item: RoadmapItem, status: str) -> None:
        """Raise ``GovernanceError`` if the gate for ``status`` rejects the item."""
        if self.governance is None or status not in ACTIVE_ROADMAP_STATUSES:
            return
        if status == "COMPLETE":
            allowed, reasons = self.governance.can_deploy_feature(item.id)
        else:
            allowed, reasons = self.governance.can_build_feature(item.id)
        if not allowed:
            logger.warning(f"Governance rejected {item.id} -> {status}: {reasons}")
            raise GovernanceError(reasons)

    def stage_update(self, item_id: str, changes: Dict[str, Any]) -> Tuple[RoadmapItem, Dict[str, Any]]:
        """Apply, gate, validate and save ``changes``; returns the item and its previous values.

        Audit and recomputation are left to ``finish_update`` so callers can
        run this inside a larger transaction.
        """
        item = self.get_item(item_id)
        old_status = item.status
        new_status = changes.get("status") or old_status

        previous = _apply(item, changes, self.ITEM_FIELDS)
        if new_status != old_status:
            self.check_transition(item, new_status)
            item.status = new_status
        issues = item.validate()
        if issues:
            raise InvalidBodyError("invalid roadmap item", details="; ".join(issues))
        item.updated_at = utcnow()
        self.repository.save(item)
        return item, {"status": old_status, **previous}

    def finish_update(self, item: RoadmapItem, previous: Dict[str, Any], user_id: str = "") -> None:
        self.audit.log("roadmap_item", item.id, "UPDATE", user_id, previous, {"status": item.status})
        self._after_commit(item.project_id, item.id)

    def update_item(self, item_id: str, user_id: str = "", **changes: Any) -> RoadmapItem:
        with self.repository.transaction():
            item, previous = self.stage_update(item_id, changes)
        self.finish_update(item, previous, user_id)
        return item

    def update_status(self, item_id: str, status: str, user_id: str = "") -> RoadmapItem:
        return self.update_item(item_id, user_id, status=status)

    def delete_item(self, item_id: str, user_id: str = "") -> None:
        item = self.get_item(item_id)
        repo = self.repository
        with log_operation("delete_roadmap_item", roadmap_item_id=item_id), repo.transaction():
            for contract in repo.list_contracts(item_id):
                for variable in repo.list_variables(contract.id):
                    repo.delete(VariableDefinition, variable.id)
                repo.delete(ContractDefinition, contract.id)
            for requirement in repo.list_requirements(item_id):
                repo.delete(Requirement, requirement.id)
            for dep in repo.list_dependencies(item.project_id):
                if item_id in (dep.source_id, dep.target_id):
                    repo.delete(RoadmapDependency, dep.id)
            repo.delete(FeatureIntelligence, item_id)
            repo.delete(RoadmapItem, item_id)
        self.audit.log("roadmap_item", item_id, "DELETE", user_id, {"title": item.title}, None)
        self._realign(item.project_id)


# ----------------------------------------------------------------------
# Contracts and variables
# ----------------------------------------------------------------------

class ContractService(GraphService):
    CONTRACT_FIELDS = ("contract_type", "version", "input_schema", "output_schema", "error_schema",
                       "backward_compatible")

    def __init__(self, repository: Repository, audit: AuditService,
                 intelligence: Optional[FeatureIntelligenceService] = None,
                 alignment: Optional[AlignmentService] = None,
                 governance: Optional[GovernanceService] = None):
        super().__init__(repository, audit, intelligence, alignment)
        self.governance = governance

    def get_contract(self, contract_id: str) -> ContractDefinition:
        return self.repository.require(ContractDefinition, contract_id)

    def list_contracts(self, roadmap_item_id: str) -> List[ContractDefinition]:
        return self.repository.list_contracts(roadmap_item_id)

    def list_contracts_by_project(self, project_id: str) -> List[ContractDefinition]:
        return self.repository.list_contracts_by_project(project_id)

    def create_contract(self, contract: ContractDefinition, user_id: str = "") -> ContractDefinition:
        item = self.repository.require(RoadmapItem, contract.roadmap_item_id)
        issues = contract.validate()
        if issues:
            raise InvalidBodyError("invalid contract", details="; ".join(issues))
        self.repository.save(contract)
        self.audit.log("contract", contract.id, "CREATE", user_id, None,
                       {"type": contract.contract_type, "version": contract.version})
        self._after_commit(item.project_id, item.id)
        return contract

    def update_contract(self, contract_id: str, user_id: str = "", **changes: Any) -> ContractDefinition:
        if self.governance is not None:
            allowed, reasons = self.governance.can_update_contract(contract_id)
            if not allowed:
                raise GovernanceError(reasons)
        contract = self.get_contract(contract_id)
        previous = _apply(contract, changes, self.CONTRACT_FIELDS)
        issues = contract.validate()
        if issues:
            raise InvalidBodyError("invalid contract", details="; ".join(issues))
        contract.updated_at = utcnow()
        self.repository.save(contract)
        self.audit.log("contract", contract_id, "UPDATE", user_id,
                       {"version": previous.get("version", contract.version)}, {"version": contract.version})
        self._after_commit(self._project_of_item(contract.roadmap_item_id), contract.roadmap_item_id)
        return contract

    def delete_contract(self, contract_id: str, user_id: str = "") -> None:
        # Variables stay behind and surface as orphans in the next alignment report.
        contract = self.get_contract(contract_id)
        self.repository.delete(ContractDefinition, contract_id)
        self.audit.log("contract", contract_id, "DELETE", user_id, {"version": contract.version}, None)
        self._after_commit(self._project_of_item(contract.roadmap_item_id), contract.roadmap_item_id)


class VariableService(GraphService):
    VARIABLE_FIELDS = ("name", "type", "required", "default_value", "description", "validation_rules")

    def get_variable(self, variable_id: str) -> VariableDefinition:
        return self.repository.require(VariableDefinition, variable_id)

    def list_variables(self, contract_id: str) -> List[VariableDefinition]:
        return self.repository.list_variables(contract_id)

    def _owner(self, contract_id: str) -> Optional[ContractDefinition]:
        return self.repository.get(ContractDefinition, contract_id)

    def create_variable(self, variable: VariableDefinition, user_id: str = "") -> VariableDefinition:
        contract = self.repository.require(ContractDefinition, variable.contract_id)
        issues = variable.validate()
        if issues:
            raise InvalidBodyError("invalid variable", details="; ".join(issues))
        project_id = self._project_of_item(contract.roadmap_item_id)
        variable.project_id = project_id or variable.project_id
        self.repository.save(variable)
        self.audit.log("variable", variable.id, "CREATE", user_id, None, {"name": variable.name})
        self._after_commit(project_id, contract.roadmap_item_id)
        return variable

    def update_variable(self, variable_id: str, user_id: str = "", **changes: Any) -> VariableDefinition:
        variable = self.get_variable(variable_id)
        previous = _apply(variable, changes, self.VARIABLE_FIELDS)
        issues = variable.validate()
        if issues:
            raise InvalidBodyError("invalid variable", details="; ".join(issues))
        self.repository.save(variable)
        self.audit.log("variable", variable_id, "UPDATE", user_id, previous, {k: changes[k] for k in previous})
        contract = self._owner(variable.contract_id)
        self._after_commit(variable.project_id, contract.roadmap_item_id if contract else None)
        return variable

    def delete_variable(self, variable_id: str, user_id: str = "") -> None:
        variable = self.get_variable(variable_id)
        self.repository.delete(VariableDefinition, variable_id)
        self.audit.log("variable", variable_id, "DELETE", user_id, {"name": variable.name}, None)
        contract = self._owner(variable.contract_id)
        self._after_commit(variable.project_id, contract.roadmap_item_id if contract else None)


# ----------------------------------------------------------------------
# Requirements, validation rules, dependencies
# ----------------------------------------------------------------------

class RequirementService(GraphService):
    REQUIREMENT_FIELDS = ("title", "acceptance_criteria", "testable", "priority")

    def list_requirements(self, roadmap_item_id: str) -> List[Requirement]:
        return self.repository.list_requirements(roadmap_item_id)

    def create_requirement(self, requirement: Requirement, user_id: str = "") -> Requirement:
        self.repository.require(RoadmapItem, requirement.roadmap_item_id)
        if not requirement.title:
            raise MissingFieldError("title is required")
        self.repository.save(requirement)
        self.audit.log("requirement", requirement.id, "CREATE", user_id, None, {"title": requirement.title})
        self._recompute(requirement.roadmap_item_id)
        return requirement

    def update_requirement(self, requirement_id: str, user_id: str = "", **changes: Any) -> Requirement:
        requirement = self.repository.require(Requirement, requirement_id)
        previous = _apply(requirement, changes, self.REQUIREMENT_FIELDS)
        self.repository.save(requirement)
        self.audit.log("requirement", requirement_id, "UPDATE", user_id, previous,
                       {k: changes[k] for k in previous})
        self._recompute(requirement.roadmap_item_id)
        return requirement

    def delete_requirement(self, requirement_id: str, user_id: str = "") -> None:
        requirement = self.repository.require(Requirement, requirement_id)
        self.repository.delete(Requirement, requirement_id)
        self.audit.log("requirement", requirement_id, "DELETE", user_id, {"title": requirement.title}, None)
        self._recompute(requirement.roadmap_item_id)


class ValidationRuleService(GraphService):
    RULE_FIELDS = ("name", "rule_type", "description", "rule_config")

    def list_rules(self, project_id: str) -> List[ValidationRule]:
        return self.repository.list_validation_rules(project_id)

    def create_rule(self, rule: ValidationRule, user_id: str = "") -> ValidationRule:
        self.repository.require(Project, rule.project_id)
        if not rule.name:
            raise MissingFieldError("name is required")
        self.repository.save(rule)
        self.audit.log("validation_rule", rule.id, "CREATE", user_id, None, {"name": rule.name})
        self._realign(rule.project_id)
        return rule

    def update_rule(self, rule_id: str, user_id: str = "", **changes: Any) -> ValidationRule:
        rule = self.repository.require(ValidationRule, rule_id)
        previous = _apply(rule, changes, self.RULE_FIELDS)
        self.repository.save(rule)
        self.audit.log("validation_rule", rule_id, "UPDATE", user_id, previous, {k: changes[k] for k in previous})
        self._realign(rule.project_id)
        return rule

    def delete_rule(self, rule_id: str, user_id: str = "") -> None:
        rule = self.repository.require(ValidationRule, rule_id)
        self.repository.delete(ValidationRule, rule_id)
        self.audit.log("validation_rule", rule_id, "DELETE", user_id, {"name": rule.name}, None)
        self._realign(rule.project_id)


class DependencyService(GraphService):
    """Edges between roadmap items. Cycles are accepted here and reported by alignment."""

    def list_dependencies(self, project_id: str) -> List[RoadmapDependency]:
        return self.repository.list_dependencies(project_id)

    def create_dependency(self, project_id: str, source_id: str, target_id: str,
                          dependency_type: str = "DIRECT", user_id: str = "") -> RoadmapDependency:
        self.repository.require(Project, project_id)
        if dependency_type not in DEPENDENCY_TYPES:
            raise InvalidBodyError(f"dependency_type must be one of: {', '.join(DEPENDENCY_TYPES)}")
        for item_id in (source_id, target_id):
            item = self.repository.require(RoadmapItem, item_id)
            if item.project_id != project_id:
                raise InvalidRequestError("roadmap item does not belong to project", details=item_id)
        dep = self.repository.save(RoadmapDependency(
            project_id=project_id,
            source_id=source_id,
            target_id=target_id,
            dependency_type=dependency_type,
        ))
        self.audit.log("roadmap_dependency", dep.id, "CREATE", user_id, None,
                       {"source_id": source_id, "target_id": target_id})
        self._realign(project_id)
        return dep

    def delete_dependency(self, dependency_id: str, user_id: str = "") -> None:
        dep = self.repository.require(RoadmapDependency, dependency_id)
        self.repository.delete(RoadmapDependency, dependency_id)
        self.audit.log("roadmap_dependency", dependency_id, "DELETE", user_id,
                       {"source_id": dep.source_id, "target_id": dep.target_id}, None)
        self._realign(dep.project_id)


# ----------------------------------------------------------------------
# Version snapshots and AI proposals
# ----------------------------------------------------------------------

class SnapshotService:
    def __init__(self, repository: Repository):
        self.repository = repository

    def create_snapshot(self, roadmap_item_id: str, data: Dict[str, Any], created_by: str = "") -> VersionSnapshot:
        self.repository.require(RoadmapItem, roadmap_item_id)
        snapshot = VersionSnapshot(
            roadmap_item_id=roadmap_item_id,
            snapshot_data=dict(data or {}),
            hash=content_hash(data or {}),
            created_by=created_by,
        )
        return self.repository.save(snapshot)

    def get_snapshot(self, snapshot_id: str) -> VersionSnapshot:
        return self.repository.require(VersionSnapshot, snapshot_id)

    def list_snapshots(self, roadmap_item_id: str) -> List[VersionSnapshot]:
        return self.repository.list_version_snapshots(roadmap_item_id)

    def list_snapshots_by_project(self, project_id: str) -> List[VersionSnapshot]:
        snapshots: List[VersionSnapshot] = []
        for item in self.repository.list_roadmap_items(project_id):
            snapshots.extend(self.repository.list_version_snapshots(item.id))
        return snapshots


class ProposalService:
    def __init__(self, repository: Repository, audit: AuditService, snapshots: SnapshotService,
                 roadmap: Optional[RoadmapService] = None):
        self.repository = repository
        self.audit = audit
        self.snapshots = snapshots
        self.roadmap = roadmap

    def get_proposal(self, proposal_id: str) -> AiProposal:
        return self.repository.require(AiProposal, proposal_id)

    def list_proposals(self, project_id: str) -> List[AiProposal]:
        return self.repository.list_proposals(project_id)

    def create_proposal(self, roadmap_item_id: str, proposal_type: str, diff: Optional[Dict[str, Any]] = None,
                        reasoning: str = "", confidence: float = 0.0) -> AiProposal:
        self.repository.require(RoadmapItem, roadmap_item_id)
        if proposal_type not in PROPOSAL_TYPES:
            raise InvalidBodyError(f"proposal_type must be one of: {', '.join(PROPOSAL_TYPES)}")
        proposal = self.repository.save(AiProposal(
            roadmap_item_id=roadmap_item_id,
            proposal_type=proposal_type,
            diff=dict(diff or {}),
            reasoning=reasoning,
            confidence_score=confidence,
        ))
        self.audit.log("ai_proposal", proposal.id, "CREATE", "", None, {"type": proposal_type})
        return proposal

    def _pending(self, proposal_id: str) -> AiProposal:
        proposal = self.get_proposal(proposal_id)
        if proposal.status != "PENDING":
            raise InvalidRequestError(f"proposal is already {proposal.status}")
        return proposal

    def approve_proposal(self, proposal_id: str, user_id: str = "") -> AiProposal:
        """Apply the diff's roadmap item fields, mark the proposal approved and snapshot the result.

        Keys of the diff that are not roadmap item fields are kept in the
        snapshot only.
        """
        proposal = self._pending(proposal_id)
        changes = {k: v for k, v in proposal.diff.items() if k in RoadmapService.ITEM_FIELDS}
        previous: Optional[Dict[str, Any]] = None

        with self.repository.transaction():
            if changes and self.roadmap is not None:
                item, previous = self.roadmap.stage_update(proposal.roadmap_item_id, changes)
            else:
                item = self.repository.require(RoadmapItem, proposal.roadmap_item_id)
            proposal.status = "APPROVED"
            proposal.reviewed_by = user_id or None
            proposal.reviewed_at = utcnow()
            self.repository.save(proposal)
            self.snapshots.create_snapshot(proposal.roadmap_item_id, {
                "proposal_id": proposal.id,
                "proposal_type": proposal.proposal_type,
                "diff": proposal.diff,
                "roadmap_item": item.to_dict(),
            }, created_by=user_id)

        self.audit.log("ai_proposal", proposal_id, "APPROVE", user_id, {"status": "PENDING"}, {"status": "APPROVED"})
        if previous is not None:
            self.roadmap.finish_update(item, previous, user_id)
        return proposal

    def reject_proposal(self, proposal_id: str, user_id: str = "") -> AiProposal:
        proposal = self._pending(proposal_id)
        proposal.status = "REJECTED"
        proposal.reviewed_by = user_id or None
        proposal.reviewed_at = utcnow()
        self.repository.save(proposal)
        self.audit.log("ai_proposal", proposal_id, "REJECT", user_id, {"status": "PENDING"}, {"status": "REJECTED"})
        return proposal


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

@dataclass
class SpecForgeApp:
    """Every service, wired to one repository."""

    settings: Settings
    repository: Repository
    notifications: NotificationService
    audit: AuditService
    drift: DriftService
    intelligence: FeatureIntelligenceService
    governance: GovernanceService
    alignment: AlignmentService
    projects: ProjectService
    roadmap: RoadmapService
    contracts: ContractService
    variables: VariableService
    requirements: RequirementService
    validation_rules: ValidationRuleService
    dependencies: DependencyService
    snapshots: SnapshotService
    proposals: ProposalService
    llm_settings: LlmSettingsService
    refinement: RefinementOrchestrator
    importer: ImportService
    reality: RealitySnapshotService
    tokens: McpTokenService
    jwt: JwtValidator
    mcp_router: Any = None
    artifacts: Any = None

    def shutdown(self) -> None:
        self.refinement.shutdown()
        self.notifications.shutdown()


def build_container(settings: Optional[Settings] = None, repository: Optional[Repository] = None,
                    client_factory: Callable[[LlmConfig], LlmClient] = build_client) -> SpecForgeApp:
    from .export import ArtifactService
    from .mcp_server import McpHandlers, McpRouter

    settings = settings or get_settings()
    repository = repository or build_repository(settings.database_url)
    notifications = NotificationService()
    audit = AuditService(repository)
    drift = DriftService(repository, audit)
    intelligence = FeatureIntelligenceService(repository, drift, notifications)
    governance = GovernanceService(intelligence)
    alignment = AlignmentService(repository, notifications)
    snapshots = SnapshotService(repository)
    llm_settings = LlmSettingsService(repository, client_factory)
    importer = ImportService(repository, alignment)
    reality = RealitySnapshotService(repository)
    tokens = McpTokenService(repository)
    roadmap = RoadmapService(repository, audit, intelligence, alignment, governance)

    app = SpecForgeApp(
        settings=settings,
        repository=repository,
        notifications=notifications,
        audit=audit,
        drift=drift,
        intelligence=intelligence,
        governance=governance,
        alignment=alignment,
        projects=ProjectService(repository, audit),
        roadmap=roadmap,
        contracts=ContractService(repository, audit, intelligence, alignment, governance),
        variables=VariableService(repository, audit, intelligence, alignment),
        requirements=RequirementService(repository, audit, intelligence, alignment),
        validation_rules=ValidationRuleService(repository, audit, intelligence, alignment),
        dependencies=DependencyService(repository, audit, intelligence, alignment),
        snapshots=snapshots,
        proposals=ProposalService(repository, audit, snapshots, roadmap),
        llm_settings=llm_settings,
        refinement=RefinementOrchestrator(repository, llm_settings.get_client),
        importer=importer,
        reality=reality,
        tokens=tokens,
        jwt=JwtValidator.from_settings(settings),
    )
    app.mcp_router = McpRouter(McpHandlers(reality, importer), tokens, settings)
    app.artifacts = ArtifactService(repository, governance)
    observability_hooks.log_domain_event("container_built", database=settings.database_url.split(":", 1)[0])
    return app

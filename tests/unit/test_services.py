"""Unit tests for the graph services: CRUD, audit, cascades and status gates."""

import uuid
from unittest.mock import patch

import pytest

from specforge.errors import (
    GovernanceError,
    InvalidBodyError,
    InvalidRequestError,
    MissingFieldError,
    NotFoundError,
)
from specforge.models import (
    ContractDefinition,
    FeatureIntelligence,
    Requirement,
    RoadmapItem,
    ValidationRule,
    VariableDefinition,
)
from specforge.services import canonical_json, content_hash

FULL_CONTEXT = {
    "description": "Capture authorised payments",
    "business_context": "Revenue is recognised on capture",
    "technical_context": "Calls the PSP capture endpoint",
}


class TestHashing:
    """Test cases for canonical hashing."""

    def test_key_order_does_not_matter(self):
        """Test that equal documents hash equally."""
        assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})
        assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'

    def test_different_content_differs(self):
        """Test that any change changes the hash."""
        assert content_hash({"a": 1}) != content_hash({"a": 2})


class TestProjectService:
    """Test cases for project CRUD."""

    def test_create_project_audits(self, container, project):
        """Test creation and the CREATE audit entry."""
        assert project.name == "Checkout"
        assert [e.action for e in container.audit.list_for_entity(project.id)] == ["CREATE"]

    def test_blank_name(self, container):
        """Test that a name is required."""
        with pytest.raises(MissingFieldError):
            container.projects.create_project("  ")

    def test_list_by_workspace(self, container, project):
        """Test workspace filtering."""
        container.projects.create_project("Elsewhere", workspace_id=str(uuid.uuid4()))

        assert [p.id for p in container.projects.list_projects(project.workspace_id)] == [project.id]
        assert len(container.projects.list_projects()) == 2

    def test_update_project(self, container, project):
        """Test that only provided fields change."""
        updated = container.projects.update_project(project.id, name="Payments", description=None)

        assert updated.name == "Payments"
        assert updated.description == "Checkout service"
        audit = container.audit.list_for_entity(project.id)[-1]
        assert audit.action == "UPDATE"
        assert audit.old_value == {"name": "Checkout"}

    def test_delete_project(self, container, project):
        """Test deletion and lookup afterwards."""
        container.projects.delete_project(project.id)

        with pytest.raises(NotFoundError, match="project not found"):
            container.projects.get_project(project.id)


class TestRoadmapService:
    """Test cases for roadmap items and their status gates."""

    def test_create_recomputes_and_realigns(self, container, project, make_item):
        """Test the post-commit side effects of item creation."""
        item = make_item()

        assert container.intelligence.get_feature_score(item.id) is not None
        assert container.alignment.get_alignment_report(project.id) is not None

    def test_invalid_item(self, container, project):
        """Test enum validation on create."""
        with pytest.raises(InvalidBodyError):
            container.roadmap.create_item(RoadmapItem(project_id=project.id, title="x", priority="URGENT"))

    def test_item_needs_project(self, container):
        """Test that the owning project must exist."""
        with pytest.raises(NotFoundError):
            container.roadmap.create_item(RoadmapItem(project_id=str(uuid.uuid4()), title="x"))

    def test_in_progress_allowed_at_build_threshold(self, container, make_item):
        """Test that a score of 50 may start work."""
        item = make_item()

        assert container.roadmap.update_status(item.id, "IN_PROGRESS").status == "IN_PROGRESS"

    def test_in_progress_rejected_below_threshold(self, container, make_item):
        """Test that the build gate blocks a low score."""
        item = make_item()
        container.repository.save(FeatureIntelligence(roadmap_item_id=item.id, overall_score=40))

        with pytest.raises(GovernanceError) as exc_info:
            container.roadmap.update_status(item.id, "IN_PROGRESS")

        assert str(exc_info.value).startswith("governance check failed: [")
        assert container.roadmap.get_item(item.id).status == "DRAFT"

    def test_complete_requires_deploy_gate(self, container, make_item, make_contract):
        """Test completion for incomplete and complete items."""
        partial = make_item()
        with pytest.raises(GovernanceError):
            container.roadmap.update_status(partial.id, "COMPLETE")

        complete = make_item("Refunds", **FULL_CONTEXT)
        make_contract(complete, variables=["amount"])
        assert container.roadmap.update_status(complete.id, "COMPLETE").status == "COMPLETE"

    def test_non_gated_status_change(self, container, make_item):
        """Test that review statuses skip the gates."""
        item = make_item()
        container.repository.save(FeatureIntelligence(roadmap_item_id=item.id, overall_score=0))

        assert container.roadmap.update_status(item.id, "IN_REVIEW").status == "IN_REVIEW"

    def test_field_update_without_status_change(self, container, make_item):
        """Test that unchanged status skips the gate and fields are applied."""
        item = make_item()
        container.repository.save(FeatureIntelligence(roadmap_item_id=item.id, overall_score=0))

        updated = container.roadmap.update_item(item.id, description="More detail")

        assert updated.description == "More detail"
        assert container.intelligence.get_feature_score(item.id).completeness_score == 20

    def test_delete_cascades(self, container, project, make_item, make_contract):
        """Test that deleting an item removes its subgraph."""
        item, other = make_item(), make_item("Other")
        contract = make_contract(item, variables=["amount"])
        container.requirements.create_requirement(Requirement(roadmap_item_id=item.id, title="r"))
        container.dependencies.create_dependency(project.id, other.id, item.id)

        container.roadmap.delete_item(item.id)

        repo = container.repository
        assert repo.get(ContractDefinition, contract.id) is None
        assert repo.list_variables(contract.id) == []
        assert repo.list_requirements(item.id) == []
        assert repo.list_dependencies(project.id) == []
        assert repo.get(FeatureIntelligence, item.id) is None
        assert container.alignment.get_alignment_report(project.id).score == 100

    def test_failed_delete_rolls_back(self, container, project, make_item, make_contract):
        """Test that a failure halfway through the cascade leaves the subgraph intact."""
        item = make_item()
        contract = make_contract(item, variables=["amount"])
        container.requirements.create_requirement(Requirement(roadmap_item_id=item.id, title="r"))
        repo = container.repository
        real_delete = repo.delete

        def failing_delete(cls, record_id):
            if cls is Requirement:
                raise RuntimeError("disk full")
            return real_delete(cls, record_id)

        with patch.object(repo, "delete", side_effect=failing_delete):
            with pytest.raises(RuntimeError):
                container.roadmap.delete_item(item.id)

        assert repo.get(ContractDefinition, contract.id) is not None
        assert len(repo.list_variables(contract.id)) == 1
        assert len(repo.list_requirements(item.id)) == 1
        assert container.roadmap.get_item(item.id).id == item.id

    def test_side_effect_failure_keeps_mutation(self, container, project):
        """Test that a failing recompute never undoes the write."""
        with patch.object(container.intelligence, "calculate_feature_score", side_effect=RuntimeError("boom")):
            item = container.roadmap.create_item(RoadmapItem(project_id=project.id, title="Resilient"))

        assert container.roadmap.get_item(item.id).title == "Resilient"


class TestContractsAndVariables:
    """Test cases for contracts and variables."""

    def test_variable_inherits_project(self, container, project, make_item, make_contract):
        """Test that variables are tagged with their project."""
        contract = make_contract(make_item(), variables=["amount"])

        variable = container.variables.list_variables(contract.id)[0]

        assert variable.project_id == project.id

    def test_invalid_contract_type(self, container, make_item):
        """Test contract validation."""
        with pytest.raises(InvalidBodyError):
            container.contracts.create_contract(ContractDefinition(roadmap_item_id=make_item().id,
                                                                   contract_type="SOAP"))

    def test_update_contract(self, container, make_item, make_contract):
        """Test a version bump and its audit entry."""
        contract = make_contract(make_item())

        updated = container.contracts.update_contract(contract.id, version="1.1.0")

        assert updated.version == "1.1.0"
        audit = container.audit.list_for_entity(contract.id)[-1]
        assert (audit.old_value, audit.new_value) == ({"version": "1.0.0"}, {"version": "1.1.0"})

    def test_delete_contract_keeps_variables(self, container, make_item, make_contract):
        """Test that variables outlive their contract."""
        contract = make_contract(make_item(), variables=["amount"])

        container.contracts.delete_contract(contract.id)

        assert len(container.repository.list_variables(contract.id)) == 1

    def test_variable_name_required(self, container, make_item, make_contract):
        """Test variable validation."""
        contract = make_contract(make_item())

        with pytest.raises(InvalidBodyError):
            container.variables.create_variable(VariableDefinition(contract_id=contract.id, name=" "))


class TestRequirementsRulesDependencies:
    """Test cases for the remaining graph services."""

    def test_requirement_updates_recompute(self, container, make_item):
        """Test that marking a requirement testable raises coverage."""
        item = make_item()
        requirement = container.requirements.create_requirement(Requirement(roadmap_item_id=item.id, title="r"))

        container.requirements.update_requirement(requirement.id, testable=True)

        assert container.intelligence.get_feature_score(item.id).test_coverage_score == 100

    def test_duplicate_rule_is_reported(self, container, project):
        """Test that rules trigger realignment."""
        container.validation_rules.create_rule(ValidationRule(project_id=project.id, name="email"))
        container.validation_rules.create_rule(ValidationRule(project_id=project.id, name="email"))

        report = container.alignment.get_alignment_report(project.id)

        assert len(report.conflicts_of("LOGIC_CONTRADICTION")) == 1

    def test_invalid_dependency_type(self, container, project, make_item):
        """Test the dependency type enum."""
        a, b = make_item("A"), make_item("B")

        with pytest.raises(InvalidBodyError):
            container.dependencies.create_dependency(project.id, a.id, b.id, dependency_type="WEAK")

    def test_cross_project_dependency(self, container, project, make_item):
        """Test that both endpoints must belong to the project."""
        local = make_item("Local")
        other_project = container.projects.create_project("Other")
        foreign = container.roadmap.create_item(RoadmapItem(project_id=other_project.id, title="Foreign"))

        with pytest.raises(InvalidRequestError):
            container.dependencies.create_dependency(project.id, local.id, foreign.id)

    def test_delete_dependency_breaks_cycle(self, container, project, make_item):
        """Test that removing an edge restores the score."""
        a, b = make_item("A"), make_item("B")
        container.dependencies.create_dependency(project.id, a.id, b.id)
        back = container.dependencies.create_dependency(project.id, b.id, a.id)
        assert container.alignment.get_alignment_report(project.id).score == 70

        container.dependencies.delete_dependency(back.id)

        assert container.alignment.get_alignment_report(project.id).score == 100


class TestSnapshotsAndProposals:
    """Test cases for version snapshots and AI proposals."""

    def test_snapshot_hash(self, container, make_item):
        """Test that the snapshot hash is the canonical content hash."""
        item = make_item()

        snapshot = container.snapshots.create_snapshot(item.id, {"b": 2, "a": 1}, created_by="u1")

        assert snapshot.hash == content_hash({"a": 1, "b": 2})
        assert [s.id for s in container.snapshots.list_snapshots(item.id)] == [snapshot.id]

    def test_proposal_lifecycle(self, container, project, make_item):
        """Test approval, the applied diff, the resulting snapshot and double approval."""
        item = make_item(description="old")
        proposal = container.proposals.create_proposal(item.id, "EDIT_DESCRIPTION", {"description": "new"},
                                                       reasoning="clearer", confidence=0.8)

        approved = container.proposals.approve_proposal(proposal.id, user_id="u1")

        assert approved.status == "APPROVED"
        assert approved.reviewed_by == "u1"
        assert container.roadmap.get_item(item.id).description == "new"
        snapshots = container.snapshots.list_snapshots_by_project(project.id)
        assert snapshots[0].snapshot_data["proposal_id"] == proposal.id
        assert snapshots[0].snapshot_data["roadmap_item"]["description"] == "new"
        assert container.audit.list_for_entity(item.id)[-1].old_value["description"] == "old"
        with pytest.raises(InvalidRequestError, match="proposal is already APPROVED"):
            container.proposals.approve_proposal(proposal.id)

    def test_reject_proposal(self, container, make_item):
        """Test rejection, which only applies to pending proposals."""
        proposal = container.proposals.create_proposal(make_item().id, "ADD_VARIABLE")

        assert container.proposals.reject_proposal(proposal.id).status == "REJECTED"
        with pytest.raises(InvalidRequestError, match="proposal is already REJECTED"):
            container.proposals.reject_proposal(proposal.id)

    def test_approved_proposal_cannot_be_rejected(self, container, make_item):
        """Test the pending guard after approval."""
        proposal = container.proposals.create_proposal(make_item().id, "ADD_VARIABLE", {"name": "PSP_KEY"})
        container.proposals.approve_proposal(proposal.id)

        with pytest.raises(InvalidRequestError, match="proposal is already APPROVED"):
            container.proposals.reject_proposal(proposal.id)

    def test_rejected_diff_leaves_item_alone(self, container, make_item):
        """Test that a diff failing validation rolls the whole approval back."""
        item = make_item()
        proposal = container.proposals.create_proposal(item.id, "EDIT_DESCRIPTION", {"priority": "URGENT"})

        with pytest.raises(InvalidBodyError):
            container.proposals.approve_proposal(proposal.id)

        assert container.proposals.get_proposal(proposal.id).status == "PENDING"
        assert container.roadmap.get_item(item.id).priority == "MEDIUM"
        assert container.snapshots.list_snapshots(item.id) == []

    def test_unknown_proposal_type(self, container, make_item):
        """Test the proposal type enum."""
        with pytest.raises(InvalidBodyError):
            container.proposals.create_proposal(make_item().id, "REWRITE_EVERYTHING")

"""Unit tests for snapshot drift checks and the per-feature drift score."""

import pytest

from specforge.drift_service import (
    ADDITION,
    MODIFIED,
    REMOVAL,
    BreakingChange,
    DiffEngine,
    SnapshotDriftReport,
    compare_project_snapshot,
    compare_snapshots,
)
from specforge.errors import NotFoundError

USER_OUTPUT = {
    "type": "object",
    "properties": {
        "email": {"type": "string"},
        "name": {"type": "string"},
    },
}


class TestDiffEngine:
    """Test cases for the property-level schema diff."""

    def test_type_change_is_breaking(self):
        """Test that a top-level type change is MODIFIED with high risk."""
        diffs = DiffEngine().compare({"type": "string"}, {"type": "integer"})

        assert len(diffs) == 1
        assert diffs[0].path == "type"
        assert diffs[0].type == MODIFIED
        assert diffs[0].is_breaking is True
        assert diffs[0].risk_score == 10

    def test_property_removed_and_added(self):
        """Test removal (breaking) and addition (safe) of properties."""
        old = {"type": "object", "properties": {"email": {"type": "string"}}}
        new = {"type": "object", "properties": {"phone": {"type": "string"}}}

        diffs = {d.path: d for d in DiffEngine().compare(old, new)}

        assert diffs["properties.email"].type == REMOVAL
        assert diffs["properties.email"].is_breaking is True
        assert diffs["properties.phone"].type == ADDITION
        assert diffs["properties.phone"].is_breaking is False
        assert diffs["properties.phone"].risk_score == 1

    def test_nested_paths_are_dotted(self):
        """Test that nested property changes carry the full dotted path."""
        old = {"type": "object", "properties": {"address": {"type": "object", "properties": {"zip": {"type": "string"}}}}}
        new = {"type": "object", "properties": {"address": {"type": "string"}}}

        paths = [d.path for d in DiffEngine().compare(old, new)]

        assert "properties.address.type" in paths
        assert "properties.address.properties.zip" in paths

    def test_newly_required_field(self):
        """Test that a field becoming required is breaking."""
        diffs = DiffEngine().compare({"type": "object", "required": ["id"]},
                                     {"type": "object", "required": ["id", "email"]})

        assert [(d.path, d.new_value, d.is_breaking) for d in diffs] == [("required", "email", True)]

    def test_array_items_are_compared(self):
        """Test recursion into array items."""
        diffs = DiffEngine().compare({"type": "array", "items": {"type": "string"}},
                                     {"type": "array", "items": {"type": "integer"}})

        assert [d.path for d in diffs] == ["items.type"]

    def test_empty_inputs(self):
        """Test that missing schemas compare as empty."""
        assert DiffEngine().compare(None, None) == []


class TestCompareSnapshots:
    """Test cases for the key-presence snapshot diff."""

    def test_only_removed_keys_count(self):
        """Test that value changes and additions are ignored."""
        report = compare_snapshots({"a": {"b": 1, "c": 2}, "d": 1}, {"a": {"b": 5}, "e": 1})

        assert report.drift_detected is True
        assert [c.field for c in report.breaking_changes] == ["a.c", "d"]
        assert report.risk_score == 20.0

    def test_risk_is_capped(self):
        """Test that the risk score never exceeds 100."""
        old = {f"k{i}": i for i in range(15)}

        assert compare_snapshots(old, {}).risk_score == 100.0

    def test_identical_snapshots(self):
        """Test that equal snapshots report no drift."""
        report = compare_snapshots({"a": 1}, {"a": 2})

        assert report.drift_detected is False
        assert report.risk_score == 0.0


class TestProjectSnapshotCheck:
    """Test cases for the structural check of imported snapshots."""

    def test_empty_snapshot_flags_layers_and_contracts(self):
        """Test both findings on an empty snapshot."""
        report = compare_project_snapshot({})

        assert [c.field for c in report.breaking_changes] == ["architecture.layers", "contracts.api_contracts"]
        assert report.risk_score == 30.0

    def test_healthy_snapshot(self):
        """Test a layered snapshot with contracts."""
        report = compare_project_snapshot({
            "architecture": {"layers": ["api", "domain"]},
            "contracts": {"api_contracts": [{"name": "users"}]},
        })

        assert report.drift_detected is False
        assert report.breaking_changes == []


class TestDriftService:
    """Test cases for drift checks against version snapshots."""

    @pytest.fixture
    def item(self, make_item):
        return make_item("User profile")

    @pytest.fixture
    def contract(self, make_contract, item):
        return make_contract(item, output_schema={"type": "object", "properties": {"email": {"type": "string"}}})

    def test_drift_detected_against_snapshot(self, container, item, contract):
        """Test that a removed output property is reported, audited and recorded."""
        snapshot = container.snapshots.create_snapshot(item.id, {"output_schema": USER_OUTPUT})

        report = container.drift.run_drift_check(contract.id, snapshot.id, performed_by="u1")

        assert report.drift_detected is True
        assert [c.field for c in report.breaking_changes] == ["output.properties.name"]
        assert report.risk_score == 1.0

        events = container.audit.list_drift_events()
        assert [e.entity_id for e in events] == [contract.id]
        assert events[0].performed_by == "u1"

        checks = container.repository.list_drift_checks(item.id)
        assert len(checks) == 1
        assert checks[0].snapshot_id == snapshot.id

    def test_no_drift_still_records_check(self, container, item, contract):
        """Test that a clean check is recorded but not audited."""
        snapshot = container.snapshots.create_snapshot(item.id, {"output": contract.output_schema})

        report = container.drift.run_drift_check(contract.id, snapshot.id)

        assert report.drift_detected is False
        assert report.risk_score == 0.0
        assert container.audit.list_drift_events() == []
        assert len(container.repository.list_drift_checks(item.id)) == 1

    def test_risk_from_small_change(self, container, item, contract):
        """Test risk scaling for a single non-breaking addition."""
        snapshot = container.snapshots.create_snapshot(item.id, {"output_schema": {"type": "object", "properties": {}}})

        report = container.drift.run_drift_check(contract.id, snapshot.id)

        assert report.risk_score == pytest.approx(0.1)

    def test_contract_keyed_snapshot(self, container, item, contract):
        """Test snapshots that store sides per contract id."""
        snapshot = container.snapshots.create_snapshot(item.id, {
            "contracts": {contract.id: {"input": {"type": "object", "properties": {"q": {"type": "string"}}}}},
        })

        report = container.drift.run_drift_check(contract.id, snapshot.id)

        fields = [c.field for c in report.breaking_changes]
        assert "input.properties.q" in fields

    def test_unknown_contract(self, container, item):
        """Test that unknown ids raise NotFoundError."""
        snapshot = container.snapshots.create_snapshot(item.id, {})

        with pytest.raises(NotFoundError):
            container.drift.run_drift_check("missing", snapshot.id)

    def test_feature_drift_score(self, container, item, contract):
        """Test the drift score before and after a risky check."""
        assert container.drift.get_feature_drift_score(item.id) == 100

        clean = container.snapshots.create_snapshot(item.id, {"output_schema": contract.output_schema})
        container.drift.run_drift_check(contract.id, clean.id)
        assert container.drift.get_feature_drift_score(item.id) == 100

        risky = container.snapshots.create_snapshot(item.id, {"output_schema": USER_OUTPUT})
        container.drift.run_drift_check(contract.id, risky.id)
        assert container.drift.get_feature_drift_score(item.id) == 50

    def test_drift_history(self, container, item, contract):
        """Test that the history lists audited drift events as dicts."""
        snapshot = container.snapshots.create_snapshot(item.id, {"output_schema": USER_OUTPUT})
        container.drift.run_drift_check(contract.id, snapshot.id)

        history = container.drift.get_drift_history()

        assert len(history) == 1
        assert history[0]["action"] == "DRIFT_DETECTED"
        assert history[0]["new_value"]["drift_report"]["drift_detected"] is True


class TestDriftFixes:
    """Test cases for revert suggestions."""

    def test_empty_report_has_no_fixes(self, container):
        """Test that a clean report yields nothing and writes no audit."""
        assert container.drift.generate_drift_fixes(SnapshotDriftReport(), "item-1") == []
        assert container.audit.list_for_entity("item-1") == []

    def test_fix_per_breaking_change(self, container):
        """Test one fix per change plus an audit entry."""
        report = SnapshotDriftReport(
            drift_detected=True,
            breaking_changes=[BreakingChange(field="output.properties.name", issue="Property 'name' removed")],
            risk_score=1.0,
        )

        fixes = container.drift.generate_drift_fixes(report, "item-1", performed_by="u1")

        assert len(fixes) == 1
        assert fixes[0]["field"] == "output.properties.name"
        assert set(fixes[0]) == {"field", "issue", "suggested_change", "explanation"}
        assert "Revert field 'output.properties.name'" in fixes[0]["suggested_change"]
        entries = container.audit.list_for_entity("item-1")
        assert [e.action for e in entries] == ["DRIFT_FIXES_GENERATED"]

"""Drift checks of live contracts against recorded version snapshots.

The metrics produced here (a risk score in [0, 1] and a per-feature drift
score in [0, 100]) are separate from the severity-classified report of
``specforge.drift`` and are never merged into it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .audit import AuditService
from .models import ContractDefinition, DriftCheckRecord, VersionSnapshot
from .specforge_logging import log_operation, observability_hooks
from .storage import Repository

logger = logging.getLogger("specforge.drift")

ADDITION = "ADDITION"
REMOVAL = "REMOVAL"
MODIFIED = "MODIFIED"

RISK_LOW = 1
RISK_MEDIUM = 5
RISK_HIGH = 10

RECENT_CHECK_WINDOW = 5


@dataclass(slots=True)
class SchemaDiff:
    path: str
    type: str
    description: str
    is_breaking: bool
    risk_score: int
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "type": self.type,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "is_breaking": self.is_breaking,
            "description": self.description,
            "risk_score": self.risk_score,
        }


@dataclass(slots=True)
class BreakingChange:
    field: str
    issue: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "issue": self.issue}


@dataclass(slots=True)
class SnapshotDriftReport:
    drift_detected: bool = False
    breaking_changes: List[BreakingChange] = field(default_factory=list)
    risk_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "drift_detected": self.drift_detected,
            "breaking_changes": [c.to_dict() for c in self.breaking_changes],
            "risk_score": self.risk_score,
        }


def _join(prefix: str, segment: str) -> str:
    return f"{prefix}.{segment}" if prefix else segment


class DiffEngine:
    """Property-level JSON schema diff with a risk weight per change."""

    def compare(self, old_schema: Dict[str, Any], new_schema: Dict[str, Any]) -> List[SchemaDiff]:
        diffs: List[SchemaDiff] = []
        self._compare(old_schema or {}, new_schema or {}, "", diffs)
        return diffs

    def _compare(self, old: Dict[str, Any], new: Dict[str, Any], prefix: str, diffs: List[SchemaDiff]) -> None:
        old_type = old.get("type") if isinstance(old.get("type"), str) else ""
        new_type = new.get("type") if isinstance(new.get("type"), str) else ""
        if old_type and new_type and old_type != new_type:
            diffs.append(SchemaDiff(
                path=_join(prefix, "type"),
                type=MODIFIED,
                old_value=old_type,
                new_value=new_type,
                is_breaking=True,
                description=f"Type changed from {old_type} to {new_type}",
                risk_score=RISK_HIGH,
            ))

        old_props = old.get("properties") if isinstance(old.get("properties"), dict) else None
        new_props = new.get("properties") if isinstance(new.get("properties"), dict) else None
        if old_props is not None:
            for name, old_prop in old_props.items():
                path = _join(prefix, f"properties.{name}")
                if new_props is None or name not in new_props:
                    diffs.append(SchemaDiff(
                        path=path,
                        type=REMOVAL,
                        old_value=old_prop,
                        is_breaking=True,
                        description=f"Property '{name}' removed",
                        risk_score=RISK_HIGH,
                    ))
                    continue
                self._compare(old_prop if isinstance(old_prop, dict) else {},
                              new_props[name] if isinstance(new_props[name], dict) else {}, path, diffs)
        if new_props is not None:
            for name, new_prop in new_props.items():
                if old_props is None or name not in old_props:
                    diffs.append(SchemaDiff(
                        path=_join(prefix, f"properties.{name}"),
                        type=ADDITION,
                        new_value=new_prop,
                        is_breaking=False,
                        description=f"Property '{name}' added",
                        risk_score=RISK_LOW,
                    ))

        old_required = {r for r in old.get("required") or [] if isinstance(r, str)}
        for name in new.get("required") or []:
            if isinstance(name, str) and name not in old_required:
                diffs.append(SchemaDiff(
                    path=_join(prefix, "required"),
                    type=MODIFIED,
                    new_value=name,
                    is_breaking=True,
                    description=f"Field '{name}' became required",
                    risk_score=RISK_HIGH,
                ))

        if old_type == "array" and new_type == "array":
            if isinstance(old.get("items"), dict) and isinstance(new.get("items"), dict):
                self._compare(old["items"], new["items"], _join(prefix, "items"), diffs)


def compare_snapshots(old: Dict[str, Any], new: Dict[str, Any]) -> SnapshotDriftReport:
    """Key-presence diff between two snapshot payloads.

    Only removed keys count; value and type changes are ignored.
    """
    report = SnapshotDriftReport()
    _collect_removed_keys(old or {}, new or {}, "", report.breaking_changes)
    if report.breaking_changes:
        report.drift_detected = True
        report.risk_score = min(100.0, float(len(report.breaking_changes)) * 10)
    return report


def _collect_removed_keys(old: Dict[str, Any], new: Dict[str, Any], prefix: str,
                          changes: List[BreakingChange]) -> None:
    for key, old_value in old.items():
        path = _join(prefix, key)
        if key not in new:
            changes.append(BreakingChange(field=path, issue="Field removed"))
            continue
        new_value = new[key]
        if isinstance(old_value, dict) and isinstance(new_value, dict):
            _collect_removed_keys(old_value, new_value, path, changes)


def _snapshot_side(snapshot_data: Dict[str, Any], side: str, contract_id: str) -> Dict[str, Any]:
    contracts = snapshot_data.get("contracts")
    if isinstance(contracts, dict) and isinstance(contracts.get(contract_id), dict):
        snapshot_data = contracts[contract_id]
    for key in (side, f"{side}_schema"):
        value = snapshot_data.get(key)
        if isinstance(value, dict):
            return value
    return {}


class DriftService:
    """Run drift checks and derive the per-feature drift score."""

    def __init__(self, repository: Repository, audit: AuditService, diff_engine: DiffEngine | None = None):
        self.repository = repository
        self.audit = audit
        self.diff_engine = diff_engine or DiffEngine()

    def run_drift_check(self, contract_id: str, snapshot_id: str, performed_by: str = "") -> SnapshotDriftReport:
        contract = self.repository.require(ContractDefinition, contract_id)
        snapshot = self.repository.require(VersionSnapshot, snapshot_id)

        with log_operation("run_drift_check", contract_id=contract_id, snapshot_id=snapshot_id):
            diffs: List[SchemaDiff] = []
            for side, current in (("input", contract.input_schema), ("output", contract.output_schema)):
                for diff in self.diff_engine.compare(_snapshot_side(snapshot.snapshot_data, side, contract_id),
                                                     current):
                    diff.path = _join(side, diff.path)
                    diffs.append(diff)

            report = SnapshotDriftReport()
            if diffs:
                report.drift_detected = True
                report.breaking_changes = [BreakingChange(field=d.path, issue=d.description) for d in diffs]
                report.risk_score = min(1.0, sum(d.risk_score for d in diffs) * 0.1)
                self.audit.log(
                    "CONTRACT",
                    contract_id,
                    "DRIFT_DETECTED",
                    performed_by,
                    {"version": "current"},
                    {"drift_report": report.to_dict()},
                )

            self.repository.save(DriftCheckRecord(
                roadmap_item_id=contract.roadmap_item_id,
                contract_id=contract_id,
                snapshot_id=snapshot_id,
                risk_score=report.risk_score,
                changes=[d.to_dict() for d in diffs],
            ))
            observability_hooks.log_domain_event(
                "drift_check_completed",
                entity_id=contract_id,
                drift_detected=report.drift_detected,
                risk_score=report.risk_score,
            )
        return report

    def get_feature_drift_score(self, roadmap_item_id: str) -> int:
        """Return 100 minus recent drift risk; 100 when there is no baseline."""
        if not self.repository.list_version_snapshots(roadmap_item_id):
            return 100
        checks = self.repository.list_drift_checks(roadmap_item_id)[-RECENT_CHECK_WINDOW:]
        if not checks:
            return 100
        mean_risk = sum(c.risk_score for c in checks) / len(checks)
        return max(0, min(100, 100 - int(round(mean_risk * 100))))

    def get_drift_history(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.audit.list_drift_events()]

    def generate_drift_fixes(self, report: SnapshotDriftReport, roadmap_item_id: str,
                             performed_by: str = "") -> List[Dict[str, str]]:
        if report is None or not report.breaking_changes:
            return []
        fixes = []
        for change in report.breaking_changes:
            fixes.append({
                "field": change.field,
                "issue": change.issue,
                "suggested_change": f"Revert field '{change.field}' to match the approved contract specification.",
                "explanation": (
                    f"The field '{change.field}' has drifted from the approved spec. Issue: {change.issue}. "
                    "Reverting this change will restore contract compliance and prevent downstream failures."
                ),
            })
        self.audit.log(
            "ROADMAP_ITEM",
            roadmap_item_id,
            "DRIFT_FIXES_GENERATED",
            performed_by,
            None,
            {"fix_count": len(fixes), "risk_score": report.risk_score},
        )
        logger.info(f"Generated {len(fixes)} drift fixes for roadmap item {roadmap_item_id}")
        return fixes


def compare_project_snapshot(snapshot: Dict[str, Any]) -> SnapshotDriftReport:
    """Structural sanity check of an imported project snapshot."""
    report = SnapshotDriftReport()
    architecture = snapshot.get("architecture") or {}
    contracts = snapshot.get("contracts") or {}
    if len(architecture.get("layers") or []) < 2:
        report.breaking_changes.append(BreakingChange(
            field="architecture.layers",
            issue="Insufficient architectural layering detected",
        ))
    if not contracts.get("api_contracts"):
        report.breaking_changes.append(BreakingChange(
            field="contracts.api_contracts",
            issue="No API contracts found in imported snapshot",
        ))
    if report.breaking_changes:
        report.drift_detected = True
        report.risk_score = float(len(report.breaking_changes)) * 15.0
    return report

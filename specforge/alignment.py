"""Project alignment engine.

Runs a set of consistency detectors over a project's specification graph
(roadmap items, dependencies, contracts, variables, validation rules) and
turns the findings into a scored ``AlignmentReport``. Reports are append-only;
readers use the newest one.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import (
    AlignmentConflict,
    AlignmentReport,
    ContractDefinition,
    Project,
    RoadmapDependency,
    RoadmapItem,
    ValidationRule,
    VariableDefinition,
    utcnow,
)
from .notifications import ALIGNMENT_UPDATED, NotificationService
from .specforge_logging import log_alignment_report, log_operation, log_performance
from .storage import Repository

logger = logging.getLogger("specforge.alignment")

SEVERITY_PENALTY = {
    "CRITICAL": 30,
    "ERROR": 15,
    "WARNING": 5,
    "INFO": 0,
}

WHITE, GREY, BLACK = 0, 1, 2


def score_conflicts(conflicts: Iterable[AlignmentConflict]) -> int:
    """100 minus the per-severity penalties, clamped to [0, 100]."""
    score = 100
    for conflict in conflicts:
        score -= SEVERITY_PENALTY.get(conflict.severity, 0)
    return max(0, min(100, score))


def find_cycles(nodes: Iterable[str], edges: Iterable[Tuple[str, str]]) -> List[Tuple[str, str, List[str]]]:
    """Three-colour DFS over a directed graph.

    Returns one ``(source, target, path)`` tuple for every edge that points
    at a node still on the DFS stack; ``path`` runs from the target back
    round to it.
    """
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for source, target in edges:
        adjacency[source].append(target)

    colour: Dict[str, int] = defaultdict(int)
    hits: List[Tuple[str, str, List[str]]] = []

    for root in nodes:
        if colour[root] != WHITE:
            continue
        colour[root] = GREY
        path = [root]
        stack = [(root, iter(adjacency[root]))]
        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if colour[child] == WHITE:
                    colour[child] = GREY
                    path.append(child)
                    stack.append((child, iter(adjacency[child])))
                    advanced = True
                    break
                if colour[child] == GREY:
                    start = path.index(child)
                    hits.append((node, child, path[start:] + [child]))
            if not advanced:
                colour[node] = BLACK
                stack.pop()
                path.pop()
    return hits


class AlignmentEngine:
    """Stateless detectors; every call re-reads its inputs from the caller."""

    def analyze(
        self,
        project_id: str,
        items: List[RoadmapItem],
        dependencies: List[RoadmapDependency],
        contracts: List[ContractDefinition],
        variables: List[VariableDefinition],
        rules: List[ValidationRule],
    ) -> AlignmentReport:
        report = AlignmentReport(project_id=project_id)
        self.detect_dependency_loops(items, dependencies, report)
        self.detect_schema_inconsistencies(contracts, report)
        self.detect_contract_collisions(contracts, report)
        self.detect_orphan_variables(variables, contracts, report)
        self.detect_duplicate_rules(rules, report)
        self._finish(report)
        return report

    def analyze_snapshot(self, snapshot: Dict[str, Any]) -> AlignmentReport:
        """Score an imported project snapshot (architecture layers and API contracts)."""
        report = AlignmentReport(project_id=str(snapshot.get("project_id", "")))
        architecture = snapshot.get("architecture") or {}
        layers = [str(layer) for layer in architecture.get("layers") or []]
        edges = [
            (str(edge.get("from", "")), str(edge.get("to", "")))
            for edge in architecture.get("dependencies_graph") or []
            if isinstance(edge, dict)
        ]
        seen_layers = set()
        for source, _target, path in find_cycles(layers, edges):
            cycle_root = path[0]
            if cycle_root in seen_layers:
                continue
            seen_layers.add(cycle_root)
            report.circular_dependencies.append(
                f"Circular dependency detected in architecture layers involving: {' -> '.join(path)}"
            )
            report.conflicts.append(AlignmentConflict(
                severity="CRITICAL",
                type="DEPENDENCY_LOOP",
                source_id=source,
                target_id=cycle_root,
                description=f"Architectural cycle detected at layer: {cycle_root}",
                remediation="Review layer isolation rules and break the coupling.",
            ))

        api_contracts = (snapshot.get("contracts") or {}).get("api_contracts") or []
        named = [
            (str(c.get("name", f"contract-{i}")), c.get("response_schema") or {})
            for i, c in enumerate(api_contracts)
            if isinstance(c, dict)
        ]
        self._check_field_types(named, report, by_name=True)
        self._finish(report)
        return report

    # ------------------------------------------------------------------
    # Detectors
    # ------------------------------------------------------------------

    def detect_dependency_loops(self, items: List[RoadmapItem], dependencies: List[RoadmapDependency],
                                report: AlignmentReport) -> None:
        titles = {item.id: item.title for item in items}
        known = set(titles)
        for dep in dependencies:
            for endpoint in (dep.source_id, dep.target_id):
                if endpoint not in known:
                    report.missing_dependencies.append(
                        f"Dependency {dep.id} references unknown roadmap item {endpoint}"
                    )

        edges = [(d.source_id, d.target_id) for d in dependencies]
        for source, target, path in find_cycles([item.id for item in items], edges):
            source_title = titles.get(source, source)
            summary = " -> ".join(titles.get(node, node) for node in path)
            report.circular_dependencies.append(
                f"Circular dependency detected starting from: {source_title} ({summary})"
            )
            report.conflicts.append(AlignmentConflict(
                severity="CRITICAL",
                type="DEPENDENCY_LOOP",
                source_id=source,
                target_id=target,
                description=f"Circular dependency detected involving roadmap item: {source_title}",
                remediation="Break the dependency loop by removing redundant dependencies.",
            ))

    def detect_schema_inconsistencies(self, contracts: List[ContractDefinition], report: AlignmentReport) -> None:
        self._check_field_types([(c.id, c.output_schema or {}) for c in contracts], report, by_name=False)

    def _check_field_types(self, schemas: List[Tuple[str, Dict[str, Any]]], report: AlignmentReport,
                           by_name: bool) -> None:
        first_seen: Dict[str, Tuple[str, str]] = {}
        for owner, schema in schemas:
            properties = schema.get("properties") if isinstance(schema, dict) else None
            if not isinstance(properties, dict):
                continue
            for field_name, field_schema in properties.items():
                if not isinstance(field_schema, dict):
                    continue
                field_type = str(field_schema.get("type", ""))
                if field_name not in first_seen:
                    first_seen[field_name] = (field_type, owner)
                    continue
                existing_type, existing_owner = first_seen[field_name]
                if existing_type == field_type:
                    continue
                if by_name:
                    description = (
                        f"Field '{field_name}' (type {field_type}) in contract '{owner}' conflicts with "
                        f"type {existing_type} in '{existing_owner}'."
                    )
                    remediation = "Normalize field types across the API surface."
                else:
                    description = (
                        f"Field '{field_name}' defined as {existing_type} in contract {existing_owner} "
                        f"and {field_type} in contract {owner}."
                    )
                    remediation = f"Align the type of '{field_name}' to be consistent across all contracts."
                report.conflicts.append(AlignmentConflict(
                    severity="ERROR",
                    type="SCHEMA_MISMATCH",
                    source_id=existing_owner,
                    target_id=owner,
                    description=description,
                    remediation=remediation,
                ))

    def detect_contract_collisions(self, contracts: List[ContractDefinition], report: AlignmentReport) -> None:
        groups: Dict[Tuple[str, str], List[ContractDefinition]] = defaultdict(list)
        for contract in contracts:
            groups[(contract.roadmap_item_id, contract.contract_type)].append(contract)
        for (item_id, contract_type), members in groups.items():
            if len(members) < 2:
                continue
            report.overlaps.append(f"Roadmap item {item_id} has {len(members)} {contract_type} contracts")
            first = members[0]
            for extra in members[1:]:
                report.conflicts.append(AlignmentConflict(
                    severity="WARNING",
                    type="CONTRACT_COLLISION",
                    source_id=extra.id,
                    target_id=first.id,
                    description=(
                        f"Multiple {contract_type} contracts detected for the same Roadmap Item. "
                        "This may cause integration ambiguity."
                    ),
                    remediation="Consolidate multiple contracts or clearly define versioning pathways.",
                ))

    def detect_orphan_variables(self, variables: List[VariableDefinition], contracts: List[ContractDefinition],
                                report: AlignmentReport) -> None:
        live = {c.id for c in contracts}
        for variable in variables:
            if variable.contract_id in live:
                continue
            report.conflicts.append(AlignmentConflict(
                severity="WARNING",
                type="LOGIC_CONTRADICTION",
                source_id=variable.id,
                target_id=variable.contract_id,
                description=f"Variable '{variable.name}' is associated with a non-existent or deleted contract.",
                remediation="Update the variable's contract association or remove the orphaned variable.",
            ))

    def detect_duplicate_rules(self, rules: List[ValidationRule], report: AlignmentReport) -> None:
        seen: Dict[str, str] = {}
        for rule in rules:
            if rule.name not in seen:
                seen[rule.name] = rule.id
                continue
            report.conflicts.append(AlignmentConflict(
                severity="INFO",
                type="LOGIC_CONTRADICTION",
                source_id=rule.id,
                target_id=seen[rule.name],
                description=f"Duplicate validation rule name detected: {rule.name}",
                remediation="Rename or consolidate duplicate validation rules.",
            ))

    @staticmethod
    def _finish(report: AlignmentReport) -> None:
        report.score = score_conflicts(report.conflicts)
        for conflict in report.conflicts:
            if conflict.remediation and conflict.remediation not in report.recommended_resolutions:
                report.recommended_resolutions.append(conflict.remediation)


class AlignmentService:
    """Load a project's graph, run the engine, persist the report."""

    def __init__(self, repository: Repository, notifications: Optional[NotificationService] = None,
                 engine: Optional[AlignmentEngine] = None):
        self.repository = repository
        self.notifications = notifications
        self.engine = engine or AlignmentEngine()

    @log_performance("trigger_alignment_check")
    def trigger_alignment_check(self, project_id: str) -> AlignmentReport:
        with log_operation("trigger_alignment_check", project_id=project_id):
            repo = self.repository
            report = self.engine.analyze(
                project_id,
                repo.list_roadmap_items(project_id),
                repo.list_dependencies(project_id),
                repo.list_contracts_by_project(project_id),
                repo.list_variables_by_project(project_id),
                repo.list_validation_rules(project_id),
            )

            previous = repo.latest_alignment_report(project_id)
            if previous is not None and report.created_at <= previous.created_at:
                # reports must be strictly increasing per project
                bumped = datetime.fromisoformat(previous.created_at) + timedelta(microseconds=1)
                report.created_at = bumped.isoformat(timespec="microseconds")
            repo.save(report)

            project = repo.get(Project, project_id)
            if project is not None:
                project.alignment_score = report.score
                project.updated_at = utcnow()
                repo.save(project)

        log_alignment_report(project_id, report.score, len(report.conflicts))
        if self.notifications is not None:
            self.notifications.broadcast(ALIGNMENT_UPDATED, {
                "project_id": project_id,
                "score": report.score,
                "report_id": report.id,
            })
        return report

    def get_alignment_report(self, project_id: str) -> Optional[AlignmentReport]:
        return self.repository.latest_alignment_report(project_id)

    def analyze_snapshot(self, snapshot: Dict[str, Any]) -> AlignmentReport:
        return self.engine.analyze_snapshot(snapshot)

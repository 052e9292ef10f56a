"""Build-artifact packages: everything an implementer needs for one roadmap item."""

from __future__ import annotations

import io
import json
import logging
import zipfile
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidRequestError
from .intelligence import GovernanceService
from .models import RoadmapItem, new_id, utcnow
from .services import content_hash
from .specforge_logging import log_error_with_context, log_operation
from .storage import Repository

logger = logging.getLogger("specforge.export")

EXPORT_FORMATS = ("json", "markdown", "zip")

VERIFICATION_PROMPT = (
    "## VERIFICATION INSTRUCTIONS\n"
    "1. Verify implementation against schemas.\n"
    "2. Run validation rules.\n"
    "3. Ensure AC are met."
)

REFINEMENT_INSTRUCTIONS = (
    "Compare output types to contract definitions. Ensure all validation rules are enforced. "
    "Suggest a refactor where the implementation diverges."
)


@dataclass
class ExportOptions:
    include_dependencies: bool = True
    include_governance: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExportOptions":
        data = data or {}
        return cls(
            include_dependencies=bool(data.get("include_dependencies", True)),
            include_governance=bool(data.get("include_governance", True)),
        )


@dataclass
class BuildArtifactPackage:
    metadata: Dict[str, Any]
    roadmap_context: Dict[str, Any]
    contracts: List[Dict[str, Any]] = field(default_factory=list)
    variables: List[Dict[str, Any]] = field(default_factory=list)
    validation_rules: List[Dict[str, Any]] = field(default_factory=list)
    acceptance_criteria: List[Dict[str, Any]] = field(default_factory=list)
    build_prompts: Dict[str, str] = field(default_factory=dict)
    refinement_loop_prompts: Dict[str, str] = field(default_factory=dict)
    governance_constraints: Dict[str, Any] = field(default_factory=dict)
    dependencies: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def body(self) -> Dict[str, Any]:
        """Everything except metadata; the integrity hash covers this."""
        data = self.to_dict()
        data.pop("metadata")
        return data


def implementation_prompt(context: Dict[str, Any], contracts: List[Dict[str, Any]],
                          criteria: List[Dict[str, Any]]) -> str:
    lines = [
        f"# IMPLEMENTATION PLAN: {context['title']}",
        "",
        "## OBJECTIVE",
        context["description"],
        "",
        "## BUSINESS CONTEXT",
        context["business_context"],
        "",
        "## TECHNICAL CONTEXT",
        context["technical_context"],
        "",
        "## CONTRACTS",
    ]
    lines.extend(f"- Type: {c['type']}, Version: {c['version']}" for c in contracts)
    lines.extend(["", "## ACCEPTANCE CRITERIA"])
    lines.extend(f"- [ ] {c['description']}" for c in criteria)
    return "\n".join(lines) + "\n"


class ArtifactService:
    def __init__(self, repository: Repository, governance: Optional[GovernanceService] = None):
        self.repository = repository
        self.governance = governance

    def generate(self, roadmap_item_id: str, options: Optional[ExportOptions] = None,
                 exported_by: str = "") -> BuildArtifactPackage:
        options = options or ExportOptions()
        repo = self.repository
        item = repo.require(RoadmapItem, roadmap_item_id)

        with log_operation("generate_build_artifact", roadmap_item_id=roadmap_item_id):
            context = {
                "title": item.title,
                "description": item.description,
                "business_context": item.business_context,
                "technical_context": item.technical_context,
                "priority": item.priority,
                "risk_level": item.risk_level,
            }
            contracts = repo.list_contracts(roadmap_item_id)
            contract_bundles = [
                {
                    "id": c.id,
                    "type": c.contract_type,
                    "version": c.version,
                    "input_schema": c.input_schema,
                    "output_schema": c.output_schema,
                }
                for c in contracts
            ]
            variables = [
                {"name": v.name, "type": v.type, "required": v.required, "validation_rules": v.validation_rules}
                for c in contracts
                for v in repo.list_variables(c.id)
            ]
            rules = [
                {"name": r.name, "rule_type": r.rule_type, "config": r.rule_config}
                for r in repo.list_validation_rules(item.project_id)
            ]
            criteria = [
                {"id": r.id, "description": r.acceptance_criteria}
                for r in repo.list_requirements(roadmap_item_id)
            ]

            pkg = BuildArtifactPackage(
                metadata={},
                roadmap_context=context,
                contracts=contract_bundles,
                variables=variables,
                validation_rules=rules,
                acceptance_criteria=criteria,
                build_prompts={
                    "implementation": implementation_prompt(context, contract_bundles, criteria),
                    "verification": VERIFICATION_PROMPT,
                },
                refinement_loop_prompts={"instructions": REFINEMENT_INSTRUCTIONS},
                governance_constraints=self._governance(roadmap_item_id) if options.include_governance else {},
                dependencies=self._dependencies(item) if options.include_dependencies else {"nodes": [item.title],
                                                                                            "edges": []},
            )
            pkg.metadata = {
                "artifact_id": new_id(),
                "roadmap_item_id": roadmap_item_id,
                "version": "1.0.0",
                "exported_at": utcnow(),
                "exported_by": exported_by,
                "integrity_hash": "SHA256:" + content_hash(pkg.body()),
                "governance_mode": item.status,
            }
        return pkg

    def _governance(self, roadmap_item_id: str) -> Dict[str, Any]:
        # advisory only; a failing gate never blocks the export
        if self.governance is None:
            return {}
        try:
            ready, reasons = self.governance.can_build_feature(roadmap_item_id)
        except Exception as e:
            log_error_with_context(e, {"operation": "export_governance", "roadmap_item_id": roadmap_item_id})
            return {"policies_enforced": [str(e)], "compliance_status": "NEEDS_REFINEMENT"}
        return {
            "policies_enforced": reasons,
            "compliance_status": "READY" if ready else "NEEDS_REFINEMENT",
        }

    def _dependencies(self, item: RoadmapItem) -> Dict[str, Any]:
        titles = {i.id: i.title for i in self.repository.list_roadmap_items(item.project_id)}
        edges = [
            {"source": titles.get(d.source_id, d.source_id), "target": titles.get(d.target_id, d.target_id),
             "type": d.dependency_type}
            for d in self.repository.list_dependencies(item.project_id)
            if item.id in (d.source_id, d.target_id)
        ]
        nodes = [item.title]
        for edge in edges:
            for name in (edge["source"], edge["target"]):
                if name not in nodes:
                    nodes.append(name)
        return {"nodes": nodes, "edges": edges}


class ArtifactExporter:
    """Render a package as ``json``, ``markdown`` or ``zip`` bytes."""

    def export(self, pkg: BuildArtifactPackage, fmt: str) -> Tuple[bytes, str]:
        if fmt == "json":
            return json.dumps(pkg.to_dict(), indent=2).encode("utf-8"), "application/json"
        if fmt == "markdown":
            return self._markdown(pkg).encode("utf-8"), "text/markdown"
        if fmt == "zip":
            return self._zip(pkg), "application/zip"
        raise InvalidRequestError(f"unsupported format: {fmt}")

    @staticmethod
    def _markdown(pkg: BuildArtifactPackage) -> str:
        meta = pkg.metadata
        return (
            f"# Build Artifact: {pkg.roadmap_context['title']}\n\n"
            f"## Metadata\n- ID: {meta['artifact_id']}\n- Exported At: {meta['exported_at']}\n"
            f"- Governance Mode: {meta['governance_mode']}\n\n"
            f"## Context\n{pkg.roadmap_context['description']}\n\n"
            "## Implementation Prompt\n```markdown\n"
            f"{pkg.build_prompts['implementation']}\n```\n\n"
            "## Verification Prompt\n```markdown\n"
            f"{pkg.build_prompts['verification']}\n```\n"
        )

    @staticmethod
    def _zip(pkg: BuildArtifactPackage) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.writestr("metadata.json", json.dumps(pkg.metadata, indent=2))
            archive.writestr("roadmap-context.md",
                             f"# {pkg.roadmap_context['title']}\n\n{pkg.roadmap_context['description']}\n")
            archive.writestr("prompts/implementation.md", pkg.build_prompts["implementation"])
            archive.writestr("prompts/verification.md", pkg.build_prompts["verification"])
            archive.writestr("prompts/refinement.md", pkg.refinement_loop_prompts["instructions"])
            for contract in pkg.contracts:
                archive.writestr(f"contracts/{contract['id']}.json", json.dumps(contract, indent=2))
            archive.writestr("build-artifact.json", json.dumps(pkg.to_dict(), indent=2))
        logger.debug(f"Packed artifact {pkg.metadata.get('artifact_id')} ({len(pkg.contracts)} contracts)")
        return buf.getvalue()

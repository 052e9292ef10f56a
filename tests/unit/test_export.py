"""Unit tests for build-artifact packages and their renderings."""

import io
import json
import zipfile

import pytest

from specforge.errors import InvalidRequestError, NotFoundError
from specforge.export import ArtifactExporter, ExportOptions
from specforge.models import FeatureIntelligence, Requirement, ValidationRule
from specforge.services import content_hash


@pytest.fixture
def populated_item(container, project, make_item, make_contract):
    """Item with a contract, a variable, a rule, a requirement and a dependency."""
    item = make_item("Capture", description="Capture authorised payments")
    make_contract(item, output_schema={"type": "object"}, variables=["PSP_KEY"])
    container.validation_rules.create_rule(ValidationRule(project_id=project.id, name="amount-positive",
                                                          rule_type="RANGE", rule_config={"min": 0}))
    container.requirements.create_requirement(Requirement(roadmap_item_id=item.id, title="Capture",
                                                          acceptance_criteria="Captured amount is settled"))
    upstream = make_item("Authorise")
    container.dependencies.create_dependency(project.id, upstream.id, item.id)
    return item


class TestArtifactService:
    """Test cases for package generation."""

    def test_package_contents(self, container, populated_item):
        """Test that every section is filled from the graph."""
        pkg = container.artifacts.generate(populated_item.id, exported_by="u1")

        assert pkg.roadmap_context["title"] == "Capture"
        assert [c["type"] for c in pkg.contracts] == ["REST"]
        assert [v["name"] for v in pkg.variables] == ["PSP_KEY"]
        assert pkg.validation_rules == [{"name": "amount-positive", "rule_type": "RANGE", "config": {"min": 0}}]
        assert pkg.acceptance_criteria[0]["description"] == "Captured amount is settled"
        assert pkg.dependencies["nodes"] == ["Capture", "Authorise"]
        assert pkg.dependencies["edges"][0]["source"] == "Authorise"
        assert pkg.metadata["exported_by"] == "u1"
        assert pkg.metadata["governance_mode"] == "DRAFT"

    def test_implementation_prompt(self, container, populated_item):
        """Test the generated implementation plan."""
        prompt = container.artifacts.generate(populated_item.id).build_prompts["implementation"]

        assert prompt.startswith("# IMPLEMENTATION PLAN: Capture\n")
        assert "- Type: REST, Version: 1.0.0" in prompt
        assert "- [ ] Captured amount is settled" in prompt

    def test_integrity_hash_covers_body(self, container, populated_item):
        """Test that the hash matches the package body and ignores metadata."""
        first = container.artifacts.generate(populated_item.id)
        second = container.artifacts.generate(populated_item.id)

        assert first.metadata["integrity_hash"] == "SHA256:" + content_hash(first.body())
        assert first.metadata["integrity_hash"] == second.metadata["integrity_hash"]
        assert first.metadata["artifact_id"] != second.metadata["artifact_id"]

    def test_options_skip_sections(self, container, populated_item):
        """Test turning off dependencies and governance."""
        options = ExportOptions.from_dict({"include_dependencies": False, "include_governance": False})

        pkg = container.artifacts.generate(populated_item.id, options)

        assert pkg.dependencies == {"nodes": ["Capture"], "edges": []}
        assert pkg.governance_constraints == {}

    def test_governance_is_advisory(self, container, make_item):
        """Test that a failing gate is reported but never blocks the export."""
        item = make_item()
        container.repository.save(FeatureIntelligence(roadmap_item_id=item.id, overall_score=10))

        pkg = container.artifacts.generate(item.id)

        assert pkg.governance_constraints["compliance_status"] == "NEEDS_REFINEMENT"
        assert pkg.governance_constraints["policies_enforced"]

    def test_unknown_item(self, container):
        """Test that a missing item raises."""
        with pytest.raises(NotFoundError):
            container.artifacts.generate("missing")


class TestArtifactExporter:
    """Test cases for rendering."""

    @pytest.fixture
    def pkg(self, container, populated_item):
        return container.artifacts.generate(populated_item.id)

    def test_json(self, pkg):
        """Test the JSON rendering."""
        content, content_type = ArtifactExporter().export(pkg, "json")

        assert content_type == "application/json"
        assert json.loads(content)["metadata"]["artifact_id"] == pkg.metadata["artifact_id"]

    def test_markdown(self, pkg):
        """Test the markdown rendering."""
        content, content_type = ArtifactExporter().export(pkg, "markdown")

        text = content.decode("utf-8")
        assert content_type == "text/markdown"
        assert text.startswith("# Build Artifact: Capture\n")
        assert "## Verification Prompt" in text

    def test_zip(self, pkg):
        """Test the archive layout."""
        content, content_type = ArtifactExporter().export(pkg, "zip")

        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            names = set(archive.namelist())
            assert json.loads(archive.read("metadata.json")) == pkg.metadata

        assert content_type == "application/zip"
        assert {"metadata.json", "roadmap-context.md", "prompts/implementation.md",
                "prompts/verification.md", "prompts/refinement.md", "build-artifact.json"} <= names
        assert f"contracts/{pkg.contracts[0]['id']}.json" in names

    def test_unknown_format(self, pkg):
        """Test that other formats are refused."""
        with pytest.raises(InvalidRequestError, match="unsupported format: pdf"):
            ArtifactExporter().export(pkg, "pdf")

"""Unit tests for the repository and both document stores."""

import pytest

from specforge.errors import NotFoundError
from specforge.models import (
    AlignmentConflict,
    AlignmentReport,
    FeatureIntelligence,
    LlmConfig,
    Project,
    RoadmapItem,
    VersionSnapshot,
)
from specforge.storage import MemoryStore, Repository, SqlStore, build_repository


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    """Repository over each store implementation."""
    if request.param == "memory":
        return Repository(MemoryStore())
    return Repository(SqlStore(f"sqlite:///{tmp_path / 'specforge.db'}"))


class TestRepository:
    """Test cases shared by every store."""

    def test_save_and_get(self, repo):
        """Test that a saved record comes back equal."""
        project = Project(name="Checkout", settings={"enable_self_evaluation": True})

        repo.save(project)

        assert repo.get(Project, project.id) == project

    def test_get_missing_and_require(self, repo):
        """Test absent lookups."""
        assert repo.get(Project, "missing") is None
        with pytest.raises(NotFoundError, match="roadmap item not found"):
            repo.require(RoadmapItem, "missing")

    def test_save_overwrites(self, repo):
        """Test that saving an existing id replaces it in place."""
        project = repo.save(Project(name="v1"))
        project.name = "v2"
        repo.save(project)

        assert [p.name for p in repo.all(Project)] == ["v2"]

    def test_returned_records_are_copies(self, repo):
        """Test that mutating a loaded record does not touch the store."""
        project = repo.save(Project(name="Checkout", settings={"a": 1}))

        loaded = repo.get(Project, project.id)
        loaded.settings["a"] = 2

        assert repo.get(Project, project.id).settings == {"a": 1}

    def test_delete(self, repo):
        """Test delete reports whether anything was removed."""
        project = repo.save(Project(name="Checkout"))

        assert repo.delete(Project, project.id) is True
        assert repo.delete(Project, project.id) is False
        assert repo.get(Project, project.id) is None

    def test_all_keeps_insertion_order_and_filters(self, repo):
        """Test listing with and without a predicate."""
        for name in ("a", "b", "c"):
            repo.save(Project(name=name, workspace_id="w1" if name != "b" else "w2"))

        assert [p.name for p in repo.all(Project)] == ["a", "b", "c"]
        assert [p.name for p in repo.all(Project, lambda p: p.workspace_id == "w1")] == ["a", "c"]

    def test_alignment_report_round_trip(self, repo):
        """Test the nested conflict list survives storage."""
        project = repo.save(Project(name="Checkout"))
        report = AlignmentReport(project_id=project.id, score=70, conflicts=[
            AlignmentConflict(severity="CRITICAL", type="DEPENDENCY_LOOP", description="loop"),
        ])

        repo.save(report)

        latest = repo.latest_alignment_report(project.id)
        assert latest.to_dict() == report.to_dict()
        assert latest.conflicts_of("DEPENDENCY_LOOP")[0].severity == "CRITICAL"

    def test_feature_intelligence_keyed_by_item(self, repo):
        """Test that intelligence is stored under the roadmap item id."""
        item = repo.save(RoadmapItem(project_id="p1", title="Capture"))
        repo.save(FeatureIntelligence(roadmap_item_id=item.id, overall_score=54))

        assert repo.get_feature_intelligence(item.id).overall_score == 54

    def test_weak_references_vanish_with_parent(self, repo):
        """Test that snapshots and scores of a deleted item are not returned."""
        item = repo.save(RoadmapItem(project_id="p1", title="Capture"))
        repo.save(VersionSnapshot(roadmap_item_id=item.id, snapshot_data={"a": 1}))
        repo.save(FeatureIntelligence(roadmap_item_id=item.id))

        repo.delete(RoadmapItem, item.id)

        assert repo.list_version_snapshots(item.id) == []
        assert repo.get_feature_intelligence(item.id) is None

    def test_reports_of_deleted_project_vanish(self, repo):
        """Test that alignment reports follow their project."""
        project = repo.save(Project(name="Checkout"))
        repo.save(AlignmentReport(project_id=project.id))

        repo.delete(Project, project.id)

        assert repo.latest_alignment_report(project.id) is None

    def test_llm_config_lookup(self, repo):
        """Test the per-project LLM config lookup."""
        repo.save(LlmConfig(project_id="p1", model="gpt-4o"))

        assert repo.get_llm_config("p1").model == "gpt-4o"
        assert repo.get_llm_config("p2") is None


class TestTransactions:
    """Test cases for grouped writes on every store."""

    def test_commit(self, repo):
        """Test that writes inside a transaction are visible inside and after it."""
        with repo.transaction():
            project = repo.save(Project(name="Checkout"))
            repo.save(RoadmapItem(project_id=project.id, title="Capture"))
            assert [i.title for i in repo.list_roadmap_items(project.id)] == ["Capture"]

        assert repo.get(Project, project.id).name == "Checkout"

    def test_rollback(self, repo):
        """Test that a failure discards every write and delete in the block."""
        kept = repo.save(Project(name="Kept"))

        with pytest.raises(RuntimeError):
            with repo.transaction():
                repo.save(Project(name="Lost"))
                repo.delete(Project, kept.id)
                kept.name = "Renamed"
                repo.save(kept)
                raise RuntimeError("abort")

        assert [p.name for p in repo.all(Project)] == ["Kept"]

    def test_nested_blocks_join_the_outer_one(self, repo):
        """Test that an inner block does not commit on its own."""
        with pytest.raises(RuntimeError):
            with repo.transaction():
                with repo.transaction():
                    repo.save(Project(name="Inner"))
                raise RuntimeError("abort")

        assert repo.all(Project) == []


class TestSqlStore:
    """Test cases specific to the SQL store."""

    def test_data_survives_a_new_store(self, tmp_path):
        """Test durability across store instances on one database file."""
        url = f"sqlite:///{tmp_path / 'durable.db'}"
        project = Repository(SqlStore(url)).save(Project(name="Checkout"))

        reopened = Repository(SqlStore(url))

        assert reopened.get(Project, project.id).name == "Checkout"


class TestBuildRepository:
    """Test cases for store selection."""

    @pytest.mark.parametrize("url", [None, "", "memory://"])
    def test_memory_urls(self, url):
        """Test that unset and memory URLs use the in-memory store."""
        assert isinstance(build_repository(url).store, MemoryStore)

    def test_sql_url(self, tmp_path):
        """Test that other URLs use SQLAlchemy."""
        assert isinstance(build_repository(f"sqlite:///{tmp_path / 'x.db'}").store, SqlStore)

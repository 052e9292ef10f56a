"""Persistence for SpecForge records.

Records are stored as JSON documents keyed by (kind, id). Two stores share
one interface: an in-memory store used by tests and local tooling, and a
SQLAlchemy store for durable deployments. ``Repository`` layers the narrow
per-entity queries the engines and services need on top of either store.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TypeVar

from sqlalchemy import Column, DateTime, Integer, JSON, String, UniqueConstraint, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import NotFoundError
from .models import (
    AiProposal,
    AlignmentReport,
    AuditLog,
    ContractDefinition,
    DriftCheckRecord,
    FeatureIntelligence,
    ImportArtifact,
    ImportSession,
    LlmConfig,
    McpToken,
    Project,
    RealitySnapshot,
    RefinementIteration,
    RefinementSession,
    Requirement,
    RoadmapDependency,
    RoadmapItem,
    ValidationRule,
    VariableDefinition,
    VersionSnapshot,
)

logger = logging.getLogger("specforge.storage")

T = TypeVar("T")

RECORD_KINDS: Dict[type, str] = {
    Project: "project",
    RoadmapItem: "roadmap_item",
    ContractDefinition: "contract",
    VariableDefinition: "variable",
    ValidationRule: "validation_rule",
    Requirement: "requirement",
    RoadmapDependency: "roadmap_dependency",
    VersionSnapshot: "version_snapshot",
    AiProposal: "ai_proposal",
    AuditLog: "audit_log",
    LlmConfig: "llm_config",
    AlignmentReport: "alignment_report",
    FeatureIntelligence: "feature_intelligence",
    DriftCheckRecord: "drift_check",
    ImportSession: "import_session",
    ImportArtifact: "import_artifact",
    RealitySnapshot: "reality_snapshot",
    RefinementSession: "refinement_session",
    RefinementIteration: "refinement_iteration",
    McpToken: "mcp_token",
}


class Store:
    """Document store interface."""

    def put(self, kind: str, record_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, kind: str, record_id: str) -> bool:
        raise NotImplementedError

    def list(self, kind: str) -> List[Dict[str, Any]]:
        """Return every record of a kind in insertion order."""
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several writes; stores without atomic batches just run them."""
        yield


class MemoryStore(Store):
    """Thread-safe dictionary store."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def put(self, kind: str, record_id: str, data: Dict[str, Any]) -> None:
        # Round-trip through JSON so callers never share mutable state with the store.
        snapshot = json.loads(json.dumps(data, default=str))
        with self._lock:
            self._records.setdefault(kind, {})[record_id] = snapshot

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._records.get(kind, {}).get(record_id)
            return json.loads(json.dumps(data)) if data is not None else None

    def delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            return self._records.get(kind, {}).pop(record_id, None) is not None

    def list(self, kind: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(json.dumps(v)) for v in self._records.get(kind, {}).values()]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        # Other threads wait on the lock; a failure restores the outermost snapshot.
        with self._lock:
            outer = self._depth == 0
            saved = {kind: dict(records) for kind, records in self._records.items()} if outer else None
            self._depth += 1
            try:
                yield
            except Exception:
                if outer:
                    self._records = saved
                raise
            finally:
                self._depth -= 1


Base = declarative_base()


class RecordRow(Base):
    __tablename__ = "specforge_records"
    __table_args__ = (UniqueConstraint("kind", "record_id", name="uq_kind_record"),)

    seq = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(64), nullable=False, index=True)
    record_id = Column(String(64), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class SqlStore(Store):
    """SQLAlchemy-backed store.

    Each call commits on its own unless it runs inside ``transaction()``, which
    shares one session per thread and commits once at the end.
    """

    def __init__(self, database_url: str, **engine_kwargs: Any):
        if database_url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        self.engine = create_engine(database_url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._local = threading.local()
        logger.info(f"[DB] Using database URL: {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def _session(self) -> Iterator[Any]:
        active = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return
        with self._session() as session:
            self._local.session = session
            try:
                yield
            finally:
                self._local.session = None

    def put(self, kind: str, record_id: str, data: Dict[str, Any]) -> None:
        payload = json.loads(json.dumps(data, default=str))
        with self._session() as session:
            row = session.query(RecordRow).filter_by(kind=kind, record_id=record_id).one_or_none()
            if row is None:
                session.add(RecordRow(kind=kind, record_id=record_id, data=payload))
            else:
                row.data = payload
                row.updated_at = datetime.now(timezone.utc)

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.query(RecordRow).filter_by(kind=kind, record_id=record_id).one_or_none()
            return dict(row.data) if row is not None else None

    def delete(self, kind: str, record_id: str) -> bool:
        with self._session() as session:
            deleted = session.query(RecordRow).filter_by(kind=kind, record_id=record_id).delete()
            return deleted > 0

    def list(self, kind: str) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = session.query(RecordRow).filter_by(kind=kind).order_by(RecordRow.seq).all()
            return [dict(row.data) for row in rows]


class Repository:
    """Typed access to SpecForge records on top of a ``Store``."""

    def __init__(self, store: Optional[Store] = None):
        self.store = store or MemoryStore()

    # ------------------------------------------------------------------
    # Generic record access
    # ------------------------------------------------------------------

    @staticmethod
    def _kind(cls: type) -> str:
        return RECORD_KINDS[cls]

    def save(self, record: T) -> T:
        self.store.put(self._kind(type(record)), record.id, record.to_dict())
        return record

    def get(self, cls: Type[T], record_id: str) -> Optional[T]:
        data = self.store.get(self._kind(cls), record_id)
        return cls.from_dict(data) if data is not None else None

    def require(self, cls: Type[T], record_id: str) -> T:
        record = self.get(cls, record_id)
        if record is None:
            raise NotFoundError(f"{self._kind(cls).replace('_', ' ')} not found", details=record_id)
        return record

    def delete(self, cls: type, record_id: str) -> bool:
        return self.store.delete(self._kind(cls), record_id)

    def transaction(self):
        """Context manager committing every write inside it together or not at all."""
        return self.store.transaction()

    def all(self, cls: Type[T], where: Optional[Callable[[T], bool]] = None) -> List[T]:
        records = [cls.from_dict(data) for data in self.store.list(self._kind(cls))]
        if where is None:
            return records
        return [r for r in records if where(r)]

    # ------------------------------------------------------------------
    # Specification graph
    # ------------------------------------------------------------------

    def list_roadmap_items(self, project_id: str) -> List[RoadmapItem]:
        return self.all(RoadmapItem, lambda i: i.project_id == project_id)

    def list_dependencies(self, project_id: str) -> List[RoadmapDependency]:
        return self.all(RoadmapDependency, lambda d: d.project_id == project_id)

    def list_contracts(self, roadmap_item_id: str) -> List[ContractDefinition]:
        return self.all(ContractDefinition, lambda c: c.roadmap_item_id == roadmap_item_id)

    def list_contracts_by_project(self, project_id: str) -> List[ContractDefinition]:
        item_ids = {i.id for i in self.list_roadmap_items(project_id)}
        return self.all(ContractDefinition, lambda c: c.roadmap_item_id in item_ids)

    def list_variables(self, contract_id: str) -> List[VariableDefinition]:
        return self.all(VariableDefinition, lambda v: v.contract_id == contract_id)

    def list_variables_by_project(self, project_id: str) -> List[VariableDefinition]:
        """All variables tagged with the project, including orphans."""
        return self.all(VariableDefinition, lambda v: v.project_id == project_id)

    def list_validation_rules(self, project_id: str) -> List[ValidationRule]:
        return self.all(ValidationRule, lambda r: r.project_id == project_id)

    def list_requirements(self, roadmap_item_id: str) -> List[Requirement]:
        return self.all(Requirement, lambda r: r.roadmap_item_id == roadmap_item_id)

    def list_proposals(self, project_id: str) -> List[AiProposal]:
        item_ids = {i.id for i in self.list_roadmap_items(project_id)}
        return self.all(AiProposal, lambda p: p.roadmap_item_id in item_ids)

    # ------------------------------------------------------------------
    # Weak back-references, filtered when their parent is gone
    # ------------------------------------------------------------------

    def list_version_snapshots(self, roadmap_item_id: str) -> List[VersionSnapshot]:
        if self.get(RoadmapItem, roadmap_item_id) is None:
            return []
        return self.all(VersionSnapshot, lambda s: s.roadmap_item_id == roadmap_item_id)

    def list_alignment_reports(self, project_id: str) -> List[AlignmentReport]:
        if self.get(Project, project_id) is None:
            return []
        reports = self.all(AlignmentReport, lambda r: r.project_id == project_id)
        return sorted(reports, key=lambda r: r.created_at)

    def latest_alignment_report(self, project_id: str) -> Optional[AlignmentReport]:
        reports = self.list_alignment_reports(project_id)
        return reports[-1] if reports else None

    def get_feature_intelligence(self, roadmap_item_id: str) -> Optional[FeatureIntelligence]:
        if self.get(RoadmapItem, roadmap_item_id) is None:
            return None
        return self.get(FeatureIntelligence, roadmap_item_id)

    def list_drift_checks(self, roadmap_item_id: str) -> List[DriftCheckRecord]:
        checks = self.all(DriftCheckRecord, lambda d: d.roadmap_item_id == roadmap_item_id)
        return sorted(checks, key=lambda d: d.created_at)

    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    def list_import_artifacts(self, session_id: str) -> List[ImportArtifact]:
        return self.all(ImportArtifact, lambda a: a.session_id == session_id)

    def latest_import_session(self, project_id: str) -> Optional[ImportSession]:
        sessions = self.all(ImportSession, lambda s: s.project_id == project_id)
        return sessions[-1] if sessions else None

    def list_reality_snapshots(self, project_id: Optional[str] = None) -> List[RealitySnapshot]:
        if project_id is None:
            return self.all(RealitySnapshot)
        return self.all(RealitySnapshot, lambda s: s.project_id == project_id)

    def list_refinement_iterations(self, session_id: str) -> List[RefinementIteration]:
        iterations = self.all(RefinementIteration, lambda i: i.session_id == session_id)
        return sorted(iterations, key=lambda i: i.iteration)

    def list_mcp_tokens(self, project_id: str) -> List[McpToken]:
        return self.all(McpToken, lambda t: t.project_id == project_id)

    def find_mcp_token_by_hash(self, token_hash: str) -> Optional[McpToken]:
        matches = self.all(McpToken, lambda t: t.token_hash == token_hash)
        return matches[0] if matches else None

    def get_llm_config(self, project_id: str) -> Optional[LlmConfig]:
        configs = self.all(LlmConfig, lambda c: c.project_id == project_id)
        return configs[-1] if configs else None

    def list_audit_logs(self, entity_id: Optional[str] = None) -> List[AuditLog]:
        if entity_id is None:
            return self.all(AuditLog)
        return self.all(AuditLog, lambda a: a.entity_id == entity_id)


def build_repository(database_url: Optional[str] = None) -> Repository:
    """Create a repository for the configured database, or in memory when unset."""
    if not database_url or database_url == "memory://":
        return Repository(MemoryStore())
    return Repository(SqlStore(database_url))

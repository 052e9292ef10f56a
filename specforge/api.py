"""HTTP API for SpecForge, served under ``/api/v1``.

Responses use a single envelope::

    {"success": true, "data": ..., "meta": {...}}
    {"success": false, "error": {"code": ..., "message": ..., "details": ...}}

Every route except ``/auth/login``, ``/auth/refresh`` and ``/ws`` requires a
JWT bearer token.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from .auth import bearer_token, require_role
from .config import Settings, get_settings
from .drift import DriftPolicy, DriftEngine
from .errors import (
    AuthFailedError,
    InvalidIdError,
    InvalidRequestError,
    MissingFieldError,
    NotFoundError,
    SpecForgeError,
    error_envelope,
)
from .export import EXPORT_FORMATS, ArtifactExporter, ExportOptions
from .llm import LlmClient
from .models import (
    ContractDefinition,
    LlmConfig,
    Principal,
    Requirement,
    RoadmapItem,
    ValidationRule,
    VariableDefinition,
    is_uuid,
)
from .services import SpecForgeApp, build_container
from .specforge_logging import initialize_default_logging, log_error_with_context

logger = logging.getLogger("specforge.api")

WRITERS = ("OWNER", "ADMIN", "ENGINEER")
REVIEWERS = ("OWNER", "ADMIN", "REVIEWER")
ADMINS = ("OWNER", "ADMIN")
PROPOSERS = WRITERS + ("AI_AGENT",)

WARMUP_PROMPT = "Hello, can you confirm you are working?"


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------

class ProjectIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    mcp_settings: Optional[Dict[str, Any]] = None


class RoadmapItemIn(BaseModel):
    title: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    business_context: Optional[str] = None
    technical_context: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    risk_level: Optional[str] = None
    readiness_level: Optional[int] = None
    breaking_change: Optional[bool] = None
    regression_sensitive: Optional[bool] = None


class StatusIn(BaseModel):
    status: str


class ContractIn(BaseModel):
    contract_type: Optional[str] = None
    version: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    error_schema: Optional[Dict[str, Any]] = None
    backward_compatible: Optional[bool] = None


class VariableIn(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    required: Optional[bool] = None
    default_value: Optional[Any] = None
    description: Optional[str] = None
    validation_rules: Optional[Dict[str, Any]] = None


class RequirementIn(BaseModel):
    title: Optional[str] = None
    acceptance_criteria: Optional[str] = None
    testable: Optional[bool] = None
    priority: Optional[str] = None


class ValidationRuleIn(BaseModel):
    name: Optional[str] = None
    rule_type: Optional[str] = None
    description: Optional[str] = None
    rule_config: Optional[Dict[str, Any]] = None


class DependencyIn(BaseModel):
    source_id: str
    target_id: str
    dependency_type: str = "DIRECT"


class ProposalIn(BaseModel):
    proposal_type: str
    diff: Optional[Dict[str, Any]] = None
    reasoning: str = ""
    confidence_score: float = 0.0


class SnapshotIn(BaseModel):
    snapshot_data: Dict[str, Any]


class DriftCompareIn(BaseModel):
    baseline: Dict[str, Any]
    proposed: Dict[str, Any]
    policy: Optional[Dict[str, Any]] = None


class DriftCheckIn(BaseModel):
    snapshot_id: str


class DriftFixIn(BaseModel):
    contract_id: str
    snapshot_id: str


class LlmConfigIn(BaseModel):
    id: Optional[str] = None
    provider: str = "openai"
    model: str = ""
    api_key: str = ""
    base_url: str = ""


class RefinementIn(BaseModel):
    project_id: str
    target_type: str
    prompt: str
    context_data: Optional[Dict[str, Any]] = None
    max_iterations: int = 3
    roadmap_item_id: Optional[str] = None


class ExportIn(BaseModel):
    format: str = "json"
    include_dependencies: bool = True
    include_governance: bool = True


class McpTokenIn(BaseModel):
    name: str = ""


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def ok(data: Any = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": _dump(data)}
    if meta is not None:
        body["meta"] = meta
    return body


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def paginate(items: List[Any], page: int, page_size: int) -> Dict[str, Any]:
    page = page if page > 0 else 1
    page_size = page_size if page_size > 0 else 10
    start = (page - 1) * page_size
    total = len(items)
    return ok(items[start:start + page_size], {
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPages": math.ceil(total / page_size) if total else 0,
    })


def _uuid(value: str, name: str) -> str:
    if not is_uuid(value):
        raise InvalidIdError(f"invalid {name}", details=value)
    return value


def _fields(body: BaseModel) -> Dict[str, Any]:
    return body.model_dump(exclude_none=True)


def get_container(request: Request) -> SpecForgeApp:
    return request.app.state.container


def current_principal(request: Request, authorization: Optional[str] = Header(None)) -> Principal:
    token = bearer_token(authorization)
    if not token:
        raise AuthFailedError("missing or malformed authorization header")
    return get_container(request).jwt.validate(token)


# ----------------------------------------------------------------------
# WebSocket subscriber
# ----------------------------------------------------------------------

class WebSocketSubscriber:
    """Bridge between the thread-safe notification hub and one async socket."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    def send(self, message: str) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)

    def close(self) -> None:
        if not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.queue.put_nowait, None)


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------

api_v1 = APIRouter(prefix="/api/v1")


@api_v1.post("/auth/login")
def login():
    return JSONResponse(status_code=501, content={
        "success": False,
        "error": {"code": "NOT_IMPLEMENTED", "message": "credential login is handled by the identity provider"},
    })


@api_v1.post("/auth/refresh")
def refresh():
    return login()


@api_v1.get("/auth/me")
def me(principal: Principal = Depends(current_principal)):
    return ok(principal.to_dict())


# Projects --------------------------------------------------------------

@api_v1.get("/projects")
def list_projects(page: int = 1, pageSize: int = 10, principal: Principal = Depends(current_principal),
                  app: SpecForgeApp = Depends(get_container)):
    return paginate(app.projects.list_projects(principal.workspace_id), page, pageSize)


@api_v1.post("/projects", status_code=201)
def create_project(body: ProjectIn, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    project = app.projects.create_project(body.name or "", principal.workspace_id, body.description or "",
                                          body.settings, principal.user_id)
    return ok(project)


@api_v1.get("/projects/{project_id}")
def get_project(project_id: str, principal: Principal = Depends(current_principal),
                app: SpecForgeApp = Depends(get_container)):
    return ok(app.projects.get_project(_uuid(project_id, "project_id")))


@api_v1.put("/projects/{project_id}")
def update_project(project_id: str, body: ProjectIn, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.projects.update_project(_uuid(project_id, "project_id"), principal.user_id, **_fields(body)))


@api_v1.delete("/projects/{project_id}")
def delete_project(project_id: str, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *ADMINS)
    app.projects.delete_project(_uuid(project_id, "project_id"), principal.user_id)
    return ok({"deleted": project_id})


# Roadmap items ---------------------------------------------------------

@api_v1.get("/projects/{project_id}/roadmap-items")
def list_roadmap_items(project_id: str, page: int = 1, pageSize: int = 10,
                       principal: Principal = Depends(current_principal),
                       app: SpecForgeApp = Depends(get_container)):
    return paginate(app.roadmap.list_items(_uuid(project_id, "project_id")), page, pageSize)


@api_v1.post("/projects/{project_id}/roadmap-items", status_code=201)
def create_roadmap_item(project_id: str, body: RoadmapItemIn, principal: Principal = Depends(current_principal),
                        app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    if not body.title:
        raise MissingFieldError("title is required")
    fields = _fields(body)
    fields.pop("status", None)
    item = RoadmapItem(project_id=_uuid(project_id, "project_id"), **fields)
    return ok(app.roadmap.create_item(item, principal.user_id))


@api_v1.get("/roadmap-items/{item_id}")
def get_roadmap_item(item_id: str, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    return ok(app.roadmap.get_item(_uuid(item_id, "roadmap_item_id")))


@api_v1.put("/roadmap-items/{item_id}")
def update_roadmap_item(item_id: str, body: RoadmapItemIn, principal: Principal = Depends(current_principal),
                        app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.roadmap.update_item(_uuid(item_id, "roadmap_item_id"), principal.user_id, **_fields(body)))


@api_v1.patch("/roadmap-items/{item_id}/status")
def update_roadmap_status(item_id: str, body: StatusIn, principal: Principal = Depends(current_principal),
                          app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.roadmap.update_status(_uuid(item_id, "roadmap_item_id"), body.status, principal.user_id))


@api_v1.delete("/roadmap-items/{item_id}")
def delete_roadmap_item(item_id: str, principal: Principal = Depends(current_principal),
                        app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    app.roadmap.delete_item(_uuid(item_id, "roadmap_item_id"), principal.user_id)
    return ok({"deleted": item_id})


# Contracts and variables -----------------------------------------------

@api_v1.get("/roadmap-items/{item_id}/contracts")
def list_contracts(item_id: str, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    return ok(app.contracts.list_contracts(_uuid(item_id, "roadmap_item_id")))


@api_v1.get("/projects/{project_id}/contracts")
def list_project_contracts(project_id: str, principal: Principal = Depends(current_principal),
                           app: SpecForgeApp = Depends(get_container)):
    return ok(app.contracts.list_contracts_by_project(_uuid(project_id, "project_id")))


@api_v1.post("/roadmap-items/{item_id}/contracts", status_code=201)
def create_contract(item_id: str, body: ContractIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    contract = ContractDefinition(roadmap_item_id=_uuid(item_id, "roadmap_item_id"), **_fields(body))
    return ok(app.contracts.create_contract(contract, principal.user_id))


@api_v1.get("/contracts/{contract_id}")
def get_contract(contract_id: str, principal: Principal = Depends(current_principal),
                 app: SpecForgeApp = Depends(get_container)):
    return ok(app.contracts.get_contract(_uuid(contract_id, "contract_id")))


@api_v1.put("/contracts/{contract_id}")
def update_contract(contract_id: str, body: ContractIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.contracts.update_contract(_uuid(contract_id, "contract_id"), principal.user_id, **_fields(body)))


@api_v1.delete("/contracts/{contract_id}")
def delete_contract(contract_id: str, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    app.contracts.delete_contract(_uuid(contract_id, "contract_id"), principal.user_id)
    return ok({"deleted": contract_id})


@api_v1.get("/contracts/{contract_id}/variables")
def list_variables(contract_id: str, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    return ok(app.variables.list_variables(_uuid(contract_id, "contract_id")))


@api_v1.post("/contracts/{contract_id}/variables", status_code=201)
def create_variable(contract_id: str, body: VariableIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    if not body.name:
        raise MissingFieldError("name is required")
    variable = VariableDefinition(contract_id=_uuid(contract_id, "contract_id"), **_fields(body))
    return ok(app.variables.create_variable(variable, principal.user_id))


@api_v1.put("/variables/{variable_id}")
def update_variable(variable_id: str, body: VariableIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.variables.update_variable(_uuid(variable_id, "variable_id"), principal.user_id, **_fields(body)))


@api_v1.delete("/variables/{variable_id}")
def delete_variable(variable_id: str, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    app.variables.delete_variable(_uuid(variable_id, "variable_id"), principal.user_id)
    return ok({"deleted": variable_id})


# Requirements, validation rules, dependencies --------------------------

@api_v1.get("/roadmap-items/{item_id}/requirements")
def list_requirements(item_id: str, principal: Principal = Depends(current_principal),
                      app: SpecForgeApp = Depends(get_container)):
    return ok(app.requirements.list_requirements(_uuid(item_id, "roadmap_item_id")))


@api_v1.post("/roadmap-items/{item_id}/requirements", status_code=201)
def create_requirement(item_id: str, body: RequirementIn, principal: Principal = Depends(current_principal),
                       app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    if not body.title:
        raise MissingFieldError("title is required")
    requirement = Requirement(roadmap_item_id=_uuid(item_id, "roadmap_item_id"), **_fields(body))
    return ok(app.requirements.create_requirement(requirement, principal.user_id))


@api_v1.put("/requirements/{requirement_id}")
def update_requirement(requirement_id: str, body: RequirementIn, principal: Principal = Depends(current_principal),
                       app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.requirements.update_requirement(_uuid(requirement_id, "requirement_id"), principal.user_id,
                                                  **_fields(body)))


@api_v1.delete("/requirements/{requirement_id}")
def delete_requirement(requirement_id: str, principal: Principal = Depends(current_principal),
                       app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    app.requirements.delete_requirement(_uuid(requirement_id, "requirement_id"), principal.user_id)
    return ok({"deleted": requirement_id})


@api_v1.get("/projects/{project_id}/validation-rules")
def list_validation_rules(project_id: str, principal: Principal = Depends(current_principal),
                          app: SpecForgeApp = Depends(get_container)):
    return ok(app.validation_rules.list_rules(_uuid(project_id, "project_id")))


@api_v1.post("/projects/{project_id}/validation-rules", status_code=201)
def create_validation_rule(project_id: str, body: ValidationRuleIn, principal: Principal = Depends(current_principal),
                           app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    if not body.name:
        raise MissingFieldError("name is required")
    rule = ValidationRule(project_id=_uuid(project_id, "project_id"), **_fields(body))
    return ok(app.validation_rules.create_rule(rule, principal.user_id))


@api_v1.put("/validation-rules/{rule_id}")
def update_validation_rule(rule_id: str, body: ValidationRuleIn, principal: Principal = Depends(current_principal),
                           app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.validation_rules.update_rule(_uuid(rule_id, "rule_id"), principal.user_id, **_fields(body)))


@api_v1.delete("/validation-rules/{rule_id}")
def delete_validation_rule(rule_id: str, principal: Principal = Depends(current_principal),
                           app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    app.validation_rules.delete_rule(_uuid(rule_id, "rule_id"), principal.user_id)
    return ok({"deleted": rule_id})


@api_v1.get("/projects/{project_id}/roadmap-dependencies")
def list_dependencies(project_id: str, principal: Principal = Depends(current_principal),
                      app: SpecForgeApp = Depends(get_container)):
    return ok(app.dependencies.list_dependencies(_uuid(project_id, "project_id")))


@api_v1.post("/projects/{project_id}/roadmap-dependencies", status_code=201)
def create_dependency(project_id: str, body: DependencyIn, principal: Principal = Depends(current_principal),
                      app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    dep = app.dependencies.create_dependency(
        _uuid(project_id, "project_id"),
        _uuid(body.source_id, "source_id"),
        _uuid(body.target_id, "target_id"),
        body.dependency_type,
        principal.user_id,
    )
    return ok(dep)


@api_v1.delete("/roadmap-dependencies/{dependency_id}")
def delete_dependency(dependency_id: str, principal: Principal = Depends(current_principal),
                      app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    app.dependencies.delete_dependency(_uuid(dependency_id, "dependency_id"), principal.user_id)
    return ok({"deleted": dependency_id})


# Alignment, drift, intelligence, governance -----------------------------

@api_v1.post("/projects/{project_id}/alignment/check")
def run_alignment_check(project_id: str, principal: Principal = Depends(current_principal),
                        app: SpecForgeApp = Depends(get_container)):
    app.projects.get_project(_uuid(project_id, "project_id"))
    return ok(app.alignment.trigger_alignment_check(project_id))


@api_v1.get("/projects/{project_id}/alignment")
def get_alignment(project_id: str, principal: Principal = Depends(current_principal),
                  app: SpecForgeApp = Depends(get_container)):
    report = app.alignment.get_alignment_report(_uuid(project_id, "project_id"))
    if report is None:
        raise NotFoundError("no alignment report for project", details=project_id)
    return ok(report)


@api_v1.post("/drift/compare")
def compare_contracts(body: DriftCompareIn, principal: Principal = Depends(current_principal)):
    engine = DriftEngine(DriftPolicy.from_dict(body.policy))
    return ok(engine.compare(body.baseline, body.proposed))


@api_v1.post("/contracts/{contract_id}/drift-check")
def run_drift_check(contract_id: str, body: DriftCheckIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    report = app.drift.run_drift_check(_uuid(contract_id, "contract_id"), _uuid(body.snapshot_id, "snapshot_id"),
                                       principal.user_id)
    contract = app.contracts.get_contract(contract_id)
    # drift feeds the drift-risk subscore
    app.intelligence.calculate_feature_score(contract.roadmap_item_id)
    return ok(report)


@api_v1.get("/drift/history")
def drift_history(page: int = 1, pageSize: int = 10, principal: Principal = Depends(current_principal),
                  app: SpecForgeApp = Depends(get_container)):
    return paginate(app.drift.get_drift_history(), page, pageSize)


@api_v1.post("/roadmap-items/{item_id}/drift-fixes")
def drift_fixes(item_id: str, body: DriftFixIn, principal: Principal = Depends(current_principal),
                app: SpecForgeApp = Depends(get_container)):
    report = app.drift.run_drift_check(_uuid(body.contract_id, "contract_id"), _uuid(body.snapshot_id, "snapshot_id"),
                                       principal.user_id)
    return ok(app.drift.generate_drift_fixes(report, _uuid(item_id, "roadmap_item_id"), principal.user_id))


@api_v1.get("/roadmap-items/{item_id}/intelligence")
def get_intelligence(item_id: str, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    item_id = _uuid(item_id, "roadmap_item_id")
    intel = app.intelligence.get_feature_score(item_id)
    if intel is None:
        intel = app.intelligence.calculate_feature_score(item_id)
    return ok(intel)


@api_v1.post("/roadmap-items/{item_id}/intelligence/recalculate")
def recalculate_intelligence(item_id: str, principal: Principal = Depends(current_principal),
                             app: SpecForgeApp = Depends(get_container)):
    return ok(app.intelligence.calculate_feature_score(_uuid(item_id, "roadmap_item_id")))


@api_v1.get("/roadmap-items/{item_id}/governance")
def get_governance(item_id: str, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    item_id = _uuid(item_id, "roadmap_item_id")
    app.roadmap.get_item(item_id)
    can_build, build_reasons = app.governance.can_build_feature(item_id)
    can_deploy, deploy_reasons = app.governance.can_deploy_feature(item_id)
    return ok({
        "can_build": can_build,
        "build_reasons": build_reasons,
        "can_deploy": can_deploy,
        "deploy_reasons": deploy_reasons,
    })


# Proposals and snapshots ------------------------------------------------

@api_v1.get("/projects/{project_id}/ai-proposals")
def list_proposals(project_id: str, page: int = 1, pageSize: int = 10,
                   principal: Principal = Depends(current_principal), app: SpecForgeApp = Depends(get_container)):
    return paginate(app.proposals.list_proposals(_uuid(project_id, "project_id")), page, pageSize)


@api_v1.post("/roadmap-items/{item_id}/ai-proposals", status_code=201)
def create_proposal(item_id: str, body: ProposalIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *PROPOSERS)
    return ok(app.proposals.create_proposal(_uuid(item_id, "roadmap_item_id"), body.proposal_type, body.diff,
                                            body.reasoning, body.confidence_score))


@api_v1.post("/ai-proposals/{proposal_id}/approve")
def approve_proposal(proposal_id: str, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *REVIEWERS)
    return ok(app.proposals.approve_proposal(_uuid(proposal_id, "proposal_id"), principal.user_id))


@api_v1.post("/ai-proposals/{proposal_id}/reject")
def reject_proposal(proposal_id: str, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *REVIEWERS)
    return ok(app.proposals.reject_proposal(_uuid(proposal_id, "proposal_id"), principal.user_id))


@api_v1.get("/roadmap-items/{item_id}/snapshots")
def list_snapshots(item_id: str, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    return ok(app.snapshots.list_snapshots(_uuid(item_id, "roadmap_item_id")))


@api_v1.post("/roadmap-items/{item_id}/snapshots", status_code=201)
def create_snapshot(item_id: str, body: SnapshotIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *WRITERS)
    return ok(app.snapshots.create_snapshot(_uuid(item_id, "roadmap_item_id"), body.snapshot_data,
                                            principal.user_id))


@api_v1.get("/snapshots/{snapshot_id}")
def get_snapshot(snapshot_id: str, principal: Principal = Depends(current_principal),
                 app: SpecForgeApp = Depends(get_container)):
    return ok(app.snapshots.get_snapshot(_uuid(snapshot_id, "snapshot_id")))


@api_v1.get("/audit-logs")
def list_audit_logs(entity_id: Optional[str] = None, page: int = 1, pageSize: int = 10,
                    principal: Principal = Depends(current_principal), app: SpecForgeApp = Depends(get_container)):
    if entity_id:
        _uuid(entity_id, "entity_id")
    logs = sorted(app.repository.list_audit_logs(entity_id), key=lambda a: a.created_at, reverse=True)
    return paginate(logs, page, pageSize)


# LLM settings ------------------------------------------------------------

@api_v1.get("/projects/{project_id}/settings/llm")
def get_llm_settings(project_id: str, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    return ok(app.llm_settings.get_config(_uuid(project_id, "project_id")))


@api_v1.put("/projects/{project_id}/settings/llm")
def update_llm_settings(project_id: str, body: LlmConfigIn, principal: Principal = Depends(current_principal),
                        app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *ADMINS)
    app.projects.get_project(_uuid(project_id, "project_id"))
    config = LlmConfig(project_id=project_id, provider=body.provider, model=body.model, api_key=body.api_key,
                       base_url=body.base_url, id=body.id or "")
    return ok(app.llm_settings.save_config(config))


@api_v1.post("/projects/{project_id}/settings/llm/test")
def test_llm_settings(project_id: str, body: LlmConfigIn, principal: Principal = Depends(current_principal),
                      app: SpecForgeApp = Depends(get_container)):
    config = LlmConfig(project_id=_uuid(project_id, "project_id"), provider=body.provider, model=body.model,
                       api_key=body.api_key, base_url=body.base_url, id=body.id or "")
    try:
        app.llm_settings.test_configuration(config)
    except Exception as e:
        log_error_with_context(e, {"operation": "test_llm_configuration", "project_id": project_id})
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": {"code": "INVALID_REQUEST", "message": f"Connection failed: {e}"},
        })
    return ok({"message": "Connection successful"})


def _warmup_frames(client: LlmClient) -> Iterator[str]:
    try:
        reply = client.generate(WARMUP_PROMPT)
    except Exception as e:
        log_error_with_context(e, {"operation": "llm_warmup"})
        yield f"event: error\ndata: {json.dumps(str(e))}\n\n"
        yield "event: done\ndata: {}\n\n"
        return
    yield f"data: {json.dumps({'chunk': reply})}\n\n"
    yield "event: done\ndata: {}\n\n"


@api_v1.get("/settings/llm/warmup")
def llm_warmup(project_id: str = Query(...), principal: Principal = Depends(current_principal),
               app: SpecForgeApp = Depends(get_container)):
    client = app.llm_settings.get_client(_uuid(project_id, "project_id"))
    return StreamingResponse(_warmup_frames(client), media_type="text/event-stream",
                             headers={"Cache-Control": "no-cache"})


# Refinement --------------------------------------------------------------

@api_v1.post("/refinement", status_code=201)
def start_refinement(body: RefinementIn, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *PROPOSERS)
    session = app.refinement.start_session(
        _uuid(body.project_id, "project_id"),
        body.target_type,
        body.prompt,
        context_data=body.context_data,
        max_iterations=body.max_iterations,
        roadmap_item_id=body.roadmap_item_id,
    )
    return ok({"session_id": session.id, "status": session.status})


@api_v1.get("/refinement/{session_id}")
def get_refinement(session_id: str, principal: Principal = Depends(current_principal),
                   app: SpecForgeApp = Depends(get_container)):
    return ok(app.refinement.get_session(_uuid(session_id, "session_id")))


@api_v1.get("/refinement/{session_id}/iterations")
def list_refinement_iterations(session_id: str, principal: Principal = Depends(current_principal),
                               app: SpecForgeApp = Depends(get_container)):
    return ok(app.refinement.list_iterations(_uuid(session_id, "session_id")))


@api_v1.get("/refinement/{session_id}/events")
def refinement_events(session_id: str, principal: Principal = Depends(current_principal),
                      app: SpecForgeApp = Depends(get_container)):
    stream = app.refinement.sse_stream(_uuid(session_id, "session_id"))
    return StreamingResponse(stream, media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@api_v1.post("/refinement/{session_id}/approve")
def approve_refinement(session_id: str, principal: Principal = Depends(current_principal),
                       app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *REVIEWERS)
    return ok(app.refinement.approve_session(_uuid(session_id, "session_id")))


# Export, MCP management, import ----------------------------------------

@api_v1.post("/roadmap-items/{item_id}/export")
def export_artifact(item_id: str, body: ExportIn, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    if body.format not in EXPORT_FORMATS:
        raise InvalidRequestError(f"unsupported format: {body.format}")
    options = ExportOptions(include_dependencies=body.include_dependencies, include_governance=body.include_governance)
    pkg = app.artifacts.generate(_uuid(item_id, "roadmap_item_id"), options, principal.user_id)
    content, content_type = ArtifactExporter().export(pkg, body.format)
    extension = {"json": "json", "markdown": "md", "zip": "zip"}[body.format]
    return Response(content=content, media_type=content_type, headers={
        "Content-Disposition": f'attachment; filename="build-artifact-{item_id}.{extension}"',
    })


@api_v1.get("/projects/{project_id}/mcp/tokens")
def list_mcp_tokens(project_id: str, principal: Principal = Depends(current_principal),
                    app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *ADMINS)
    return ok([t.public_dict() for t in app.tokens.list_tokens(_uuid(project_id, "project_id"))])


@api_v1.post("/projects/{project_id}/mcp/tokens", status_code=201)
def create_mcp_token(project_id: str, body: McpTokenIn, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *ADMINS)
    return ok(app.tokens.create_token(_uuid(project_id, "project_id"), body.name))


@api_v1.delete("/mcp/tokens/{token_id}")
def revoke_mcp_token(token_id: str, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *ADMINS)
    return ok(app.tokens.revoke_token(_uuid(token_id, "token_id")).public_dict())


@api_v1.delete("/projects/{project_id}/mcp/tokens")
def revoke_all_mcp_tokens(project_id: str, principal: Principal = Depends(current_principal),
                          app: SpecForgeApp = Depends(get_container)):
    require_role(principal, *ADMINS)
    return ok({"revoked": app.tokens.revoke_all(_uuid(project_id, "project_id"))})


@api_v1.get("/projects/{project_id}/reality-snapshots")
def list_reality_snapshots(project_id: str, principal: Principal = Depends(current_principal),
                           app: SpecForgeApp = Depends(get_container)):
    return ok(app.reality.list_active_snapshots(_uuid(project_id, "project_id")))


@api_v1.get("/projects/{project_id}/import/catalogue")
def import_catalogue(project_id: str, principal: Principal = Depends(current_principal),
                     app: SpecForgeApp = Depends(get_container)):
    return ok(app.importer.merged_catalogue(_uuid(project_id, "project_id")))


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------

async def _specforge_error(request: Request, exc: SpecForgeError) -> JSONResponse:
    if exc.http_status >= 500:
        log_error_with_context(exc, {"operation": "http_request", "path": request.url.path})
    return JSONResponse(status_code=exc.http_status, content=error_envelope(exc))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={
        "success": False,
        "error": {"code": "INVALID_BODY", "message": "invalid request body", "details": str(exc.errors())},
    })


def create_app(container: Optional[SpecForgeApp] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (container.settings if container is not None else get_settings())
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        container.shutdown()

    app = FastAPI(title="SpecForge API", version="1.0.0", lifespan=lifespan)
    app.state.container = container
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(SpecForgeError, _specforge_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.include_router(api_v1)

    @app.websocket("/ws")
    async def notifications_socket(websocket: WebSocket, token: str = ""):
        try:
            principal = container.jwt.validate(token)
        except AuthFailedError as e:
            logger.warning(f"WebSocket upgrade refused: {e.message}")
            await websocket.close(code=1008, reason="unauthorized")
            return

        await websocket.accept()
        subscriber = WebSocketSubscriber(asyncio.get_running_loop())
        container.notifications.register(subscriber, principal.user_id)
        receiver = asyncio.create_task(websocket.receive_text())
        try:
            while True:
                sender = asyncio.create_task(subscriber.queue.get())
                done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if receiver in done:
                    sender.cancel()
                    receiver.result()
                    receiver = asyncio.create_task(websocket.receive_text())
                    continue
                message = sender.result()
                if message is None:
                    break
                await websocket.send_text(message)
        except WebSocketDisconnect:
            logger.debug(f"WebSocket closed for user {principal.user_id}")
        finally:
            receiver.cancel()
            container.notifications.unregister(subscriber)

    return app


def run() -> None:
    """Console entry point: serve the HTTP API on ``API_PORT``."""
    import uvicorn

    settings = get_settings()
    initialize_default_logging(settings.log_level, settings.log_file)
    logger.info(f"Starting SpecForge API on {settings.api_host}:{settings.api_port}")
    uvicorn.run(create_app(settings=settings), host=settings.api_host, port=settings.api_port)

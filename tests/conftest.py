"""Shared fixtures for the SpecForge test suites.

Every fixture runs against an in-memory repository; nothing touches the
network or a real database.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from specforge.config import Settings
from specforge.models import ContractDefinition, RoadmapItem, VariableDefinition
from specforge.services import build_container
from specforge.storage import Repository

JWT_SECRET = "specforge-test-secret-0123456789abcdef"
WORKSPACE_ID = "6f1c2a9e-1d2b-4c3d-8e9f-0a1b2c3d4e5f"
STATIC_MCP_TOKEN = "static-mcp-token"


class ScriptedLlmClient:
    """LLM double that replays canned responses in order and records every prompt."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts = []
        self.connection_error = None

    def script(self, *responses):
        self.responses.extend(responses)

    def generate(self, prompt):
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def test_connection(self):
        if self.connection_error is not None:
            raise self.connection_error


class RecordingSubscriber:
    """Notification subscriber that keeps every message it is sent."""

    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []
        self.closed = False

    def send(self, message):
        if self.fail:
            raise ConnectionError("socket gone")
        self.messages.append(message)

    def close(self):
        self.closed = True


@pytest.fixture
def settings():
    """Settings for an in-memory deployment with a known JWT secret."""
    return Settings(
        database_url="memory://",
        jwt_secret=JWT_SECRET,
        mcp_token=STATIC_MCP_TOKEN,
        allow_static_token=True,
    )


@pytest.fixture
def workspace_id():
    return WORKSPACE_ID


@pytest.fixture
def llm_client():
    return ScriptedLlmClient()


@pytest.fixture
def container(settings, llm_client):
    """Fully wired services over a fresh in-memory repository."""
    app = build_container(settings, Repository(), client_factory=lambda config: llm_client)
    yield app
    app.shutdown()


@pytest.fixture
def repository(container):
    return container.repository


@pytest.fixture
def project(container):
    return container.projects.create_project("Checkout", workspace_id=WORKSPACE_ID,
                                             description="Checkout service")


@pytest.fixture
def make_item(container, project):
    """Factory for roadmap items in the default project."""

    def _make(title="Payment capture", **fields):
        return container.roadmap.create_item(RoadmapItem(project_id=project.id, title=title, **fields))

    return _make


@pytest.fixture
def make_contract(container):
    """Factory for contracts, optionally with variables attached."""

    def _make(item, contract_type="REST", output_schema=None, input_schema=None, variables=()):
        contract = container.contracts.create_contract(ContractDefinition(
            roadmap_item_id=item.id,
            contract_type=contract_type,
            input_schema=input_schema or {},
            output_schema=output_schema or {},
        ))
        for name in variables:
            container.variables.create_variable(VariableDefinition(contract_id=contract.id, name=name))
        return contract

    return _make


@pytest.fixture
def make_subscriber():
    return RecordingSubscriber


@pytest.fixture
def subscriber(container):
    sub = RecordingSubscriber()
    container.notifications.register(sub, "observer")
    return sub


@pytest.fixture
def mint_token():
    """Factory for signed access tokens."""

    def _mint(role="OWNER", user_id=None, workspace_id=WORKSPACE_ID, secret=JWT_SECRET, **claims):
        payload = {
            "sub": user_id or str(uuid.uuid4()),
            "workspace": workspace_id,
            "role": role,
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        }
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm="HS256")

    return _mint

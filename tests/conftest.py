"""
Shared pytest fixtures for the StoryForge test suite.

Provides:
    - encryption_key: Fernet key in ENCRYPTION_KEY (session-scoped, autouse)
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - http: FakeSession standing in for requests.Session
    - fake_provider / gateway: scripted model provider behind a real LLMGateway
    - make_project: Project + TrackerIntegration factory
    - tracker: real tracker client for the project, wired to ``http``
"""

import json
import os
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from storyforge import create_app
from storyforge.ai.gateway import LLMGateway, LLMProvider
from storyforge.integrations.tracker_gateway import build_tracker_client
from storyforge.models import db as _db
from storyforge.models.project import Project, TrackerIntegration
from storyforge.services import run_service
from storyforge.utils.crypto import encrypt_secret


@pytest.fixture(scope="session", autouse=True)
def encryption_key():
    """Stable ENCRYPTION_KEY for the whole session so stored secrets decrypt."""
    key = Fernet.generate_key().decode()
    os.environ["ENCRYPTION_KEY"] = key
    yield key


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Tracker HTTP fakes ───────────────────────────────────────────────────


class FakeResponse:
    """The subset of requests.Response the tracker gateway reads."""

    def __init__(self, status_code=200, payload=None, text=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = headers or {}

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """Stands in for requests.Session.

    Routes are (method, url fragment) pairs; the longest matching fragment
    wins. A route with several responses plays them in order and then keeps
    returning the last one. Every request is recorded in ``calls``.
    """

    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, method, url_part, *responses):
        self.routes.append((method.upper(), url_part, list(responses)))
        return self

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method.upper(), "url": url, **kwargs})
        matches = [r for r in self.routes if r[0] == method.upper() and r[1] in url]
        if not matches:
            return FakeResponse(404, {"message": f"no fake route for {method} {url}"})
        _, _, queue = max(matches, key=lambda r: len(r[1]))
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def calls_to(self, method, url_part):
        return [c for c in self.calls if c["method"] == method.upper() and url_part in c["url"]]


@pytest.fixture()
def http():
    return FakeSession()


@pytest.fixture()
def fake_response():
    return FakeResponse


# ── Model provider fakes ─────────────────────────────────────────────────


class FakeProvider(LLMProvider):
    """Scripted provider: each call pops the next result or raises it."""

    name = "fake"
    supports_retrieval = True

    def __init__(self, results=None, retrieval=None):
        self.results = list(results or [])
        self.retrieval = retrieval
        self.calls = []
        self.retrieve_calls = []

    def generate(self, *, system, user, model, schema, schema_name, max_output_tokens, temperature):
        self.calls.append({"system": system, "user": user, "model": model, "temperature": temperature})
        outcome = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, dict) and "parsed" not in outcome and "text" not in outcome:
            outcome = {"parsed": outcome, "text": "", "request_id": "req_fake"}
        return {"prompt_tokens": 10, "completion_tokens": 20, "model": model, **outcome}

    def retrieve(self, *, query, knowledge_base_id, model, max_results, max_output_tokens):
        self.retrieve_calls.append({"query": query, "knowledge_base_id": knowledge_base_id})
        if isinstance(self.retrieval, Exception):
            raise self.retrieval
        return self.retrieval or {"snippets": [], "summary": ""}


def enhancement_payload(**overrides):
    """A well-formed model answer in the camelCase schema shape."""
    data = {
        "title": "Add login",
        "type": "User Story",
        "roleGoalReason": "As a member, I want to log in so that I can see my orders.",
        "descriptionText": "Members sign in with their email and password.",
        "acceptanceCriteria": ["Valid credentials open the dashboard"],
        "testCases": [{"given": "a registered member", "when": "they sign in", "then": "the dashboard opens"}],
        "implementationNotes": ["Use the existing session service"],
        "tasks": ["Implement OAuth flow"],
        "gaps": [],
        "dependencies": [],
        "storyPoints": 3,
        "estimateRationale": "Small, well understood change.",
        "tags": [],
    }
    data.update(overrides)
    return data


@pytest.fixture()
def fake_provider():
    return FakeProvider([enhancement_payload()])


@pytest.fixture()
def gateway(fake_provider):
    """Real gateway routing gpt-* models to the fake provider, no waiting."""
    return LLMGateway(
        providers={"openai": fake_provider},
        timeout=None,
        backoff_base_ms=0,
        jitter_ms=0,
        sleep=lambda s: None,
    )


# ── Data factories ───────────────────────────────────────────────────────


ADO_SETTINGS = {"organization": "contoso", "project": "Shop"}
JIRA_SETTINGS = {
    "base_url": "https://contoso.atlassian.net",
    "project_key": "SHOP",
    "email": "bot@contoso.com",
    "story_points_field_id": "customfield_10016",
}


@pytest.fixture()
def make_project():
    """Factory: Project with an active tracker integration (flushed, committed)."""

    def _make(tracker="azure_devops", *, settings=None, token="tracker-token",
              tm_token=None, guardrails="", knowledge_base_id="", auth_type="basic"):
        project = Project(name="Shop", guardrails=guardrails, knowledge_base_id=knowledge_base_id)
        _db.session.add(project)
        _db.session.flush()
        if tracker:
            if settings is None:
                settings = ADO_SETTINGS if tracker == "azure_devops" else JIRA_SETTINGS
            _db.session.add(TrackerIntegration(
                project_id=project.id,
                type=tracker,
                is_active=True,
                auth_type=auth_type,
                settings=dict(settings),
                credentials_encrypted=encrypt_secret(token) if token else "",
                test_management_token_encrypted=encrypt_secret(tm_token) if tm_token else "",
            ))
        _db.session.commit()
        return project

    return _make


@pytest.fixture()
def enhancement():
    """Factory for model answers: ``enhancement(tasks=[...])``."""
    return enhancement_payload


@pytest.fixture()
def provider_cls():
    return FakeProvider


@pytest.fixture()
def tracker(http):
    """Build the project's real tracker client on top of the FakeSession."""

    def _client_for(project):
        client = build_tracker_client(project.integration, session=http)
        client._sleep = lambda s: None
        return client

    with patch.object(run_service, "build_client_for_project", side_effect=_client_for):
        yield http

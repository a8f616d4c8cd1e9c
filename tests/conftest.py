"""
Shared pytest fixtures for the approval workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - http: Fake requests.Session installed on the shared ServiceGateway (autouse)
    - bus: Fresh in-memory event bus per test (autouse)
    - client: Flask test client (function-scoped)
    - orchestrator: the app's WorkflowOrchestrator
    - make_template / publish_template: template definition + publish factories
    - solution_template: published SOLUTION_CONFIGURATION template
    - recorder: callback handler that records every subject it sees
"""

import pytest

from approvals import create_app
from approvals.callbacks.handlers import CallbackOutcome, WorkflowCallbackHandler
from approvals.integrations.event_bus import MemoryBus
from approvals.models import db as _db
from approvals.services import template_service


# ── Fakes ────────────────────────────────────────────────────────────────


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or ("" if payload is None else str(payload))
        self.content = b"" if payload is None else b"{}"

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        return self._payload if self._payload is not None else {}


class FakeSession:
    """Stand-in for requests.Session: records calls, replays queued responses.

    ``queue`` holds responses (or exceptions) served in order; once empty,
    ``default`` is returned.
    """

    def __init__(self, default=None):
        self.calls = []
        self.queue = []
        self.default = default or FakeResponse(200, {})

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.queue.pop(0) if self.queue else self.default
        if isinstance(item, Exception):
            raise item
        return item

    def respond(self, status_code=200, payload=None, text=""):
        self.queue.append(FakeResponse(status_code, payload, text))
        return self

    def fail(self, exc):
        self.queue.append(exc)
        return self

    def calls_to(self, fragment):
        return [c for c in self.calls if fragment in c["url"]]


class RecordingHandler(WorkflowCallbackHandler):
    def __init__(self, outcome=None, exc=None):
        self.outcome = outcome or CallbackOutcome.success()
        self.exc = exc
        self.seen = []

    def handle(self, subject):
        self.seen.append({"workflow_id": subject.workflow_id, "state": subject.state,
                          "result_code": (subject.result or {}).get("resultCode")})
        if self.exc:
            raise self.exc
        return self.outcome


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


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


@pytest.fixture(autouse=True)
def http(app):
    """No test talks to a real service: every gateway call hits a FakeSession."""
    gateway = app.extensions["service_gateway"]
    fake = FakeSession()
    gateway._session = fake
    gateway._sleep = lambda seconds: None
    gateway._cb_state = {}
    yield fake
    gateway._session = None


@pytest.fixture(autouse=True)
def bus(app):
    fresh = MemoryBus()
    app.extensions["event_bus"] = fresh
    app.extensions.pop("event_consumer", None)
    return fresh


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def orchestrator(app):
    return app.extensions["orchestrator"]


# ── Convenience fixtures ─────────────────────────────────────────────────


def solution_template_data(template_id="solution-approval-v1", **overrides):
    data = {
        "template_id": template_id,
        "version": "1.0",
        "name": "Solution configuration approval",
        "entity_type": "SOLUTION_CONFIGURATION",
        "decision_tables": [{
            "name": "pricing-variance",
            "hit_policy": "FIRST",
            "inputs": [{"name": "pricingVariance", "type": "number"}],
            "outputs": [
                {"name": "approverRoles", "type": "array"},
                {"name": "approvalCount", "type": "number"},
                {"name": "isSequential", "type": "boolean"},
            ],
            "rules": [
                {"rule_id": "no-variance", "conditions": {"pricingVariance": "== 0"},
                 "outputs": {"approvalRequired": False}},
                {"rule_id": "high-variance", "conditions": {"pricingVariance": "> 10"},
                 "outputs": {"approverRoles": ["PRODUCT_MANAGER", "RISK_MANAGER"],
                             "isSequential": True, "approvalCount": 2}},
                {"rule_id": "low-variance", "conditions": {"pricingVariance": "<= 10"},
                 "outputs": {"approverRoles": ["PRODUCT_MANAGER"], "approvalCount": 1}},
            ],
        }],
        "escalation_rules": [],
        "callback_handlers": {},
        "validators": [],
    }
    data.update(overrides)
    return data


def publish(data, actor="admin"):
    template_service.create_template(data, actor=actor)
    return template_service.publish_template(data["template_id"], actor=actor)


@pytest.fixture()
def make_template():
    """Factory: ``make_template(template_id, **overrides)`` → definition dict."""
    return solution_template_data


@pytest.fixture()
def publish_template():
    """Factory: create + publish a definition, returns the active template."""
    return publish


@pytest.fixture()
def solution_template():
    return publish(solution_template_data())


@pytest.fixture()
def recorder(app):
    """Register a RecordingHandler; returns a factory ``recorder(key, **kw)``."""
    registry = app.extensions["callback_registry"]
    replaced = {}

    def install(key, **kwargs):
        replaced.setdefault(key, registry.get_by_key(key))
        handler = RecordingHandler(**kwargs)
        registry.register(key, handler)
        return handler

    yield install

    for key, previous in replaced.items():
        if previous is None:
            registry.unregister(key)
        else:
            registry.register(key, previous)

"""
Shared pytest fixtures for the Workshop Discovery test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse); also
      installs a service graph wired to the scripted interpreter and fake clock
    - client: Flask test client (function-scoped)
    - interpreter: ScriptedInterpreter test double
    - clock: FakeClock driving lease expiry
    - make_session: factory for a workshop + session + checklist
    - items_by_number: fresh {item_number: ChecklistItem} loader
"""

from datetime import datetime, timedelta, timezone

import pytest

from discovery import build_services, create_app
from discovery.ai.interpreter import EvidenceInterpreter, InterpreterProposal
from discovery.models import db as _db
from discovery.models.checklist import ChecklistItem
from discovery.services import get_services
from discovery.services.workshop_service import create_session, create_workshop


DEFAULT_ITEMS = [
    {"text": "Number and locations of warehouses", "importance": "critical",
     "category": "Organizational Structure"},
    {"text": "Standard customer payment terms", "importance": "important",
     "category": "Master Data"},
]


# ── Test doubles ─────────────────────────────────────────────────────────


class ScriptedInterpreter(EvidenceInterpreter):
    """
    Interpreter that replays queued answers in order.

    A queued entry is an ``InterpreterProposal``, an exception instance to
    raise, or a callable receiving the propose() kwargs. With an empty queue
    the interpreter proposes nothing.
    """

    def __init__(self):
        self.queue = []
        self.calls = []

    def push(self, *answers):
        self.queue.extend(answers)

    def propose(self, **kwargs):
        self.calls.append(kwargs)
        if not self.queue:
            return InterpreterProposal()
        answer = self.queue.pop(0)
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return answer(**kwargs)
        return answer


class FakeClock:
    """Controllable UTC clock for the session lock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


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


@pytest.fixture()
def interpreter():
    return ScriptedInterpreter()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def session(app, _setup_db, interpreter, clock):
    """Per-test: fresh services, rollback after test, recreate tables."""
    with app.app_context():
        app.extensions["discovery"] = build_services(app, interpreter=interpreter, clock=clock)
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def services():
    return get_services()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_session():
    """Create a workshop + discovery session, optionally with a checklist.

    Returns the DiscoverySession; pass ``items=[]`` for a session without a
    checklist.
    """
    def _make(items=None, *, module="MM", mission="Design the wholesale distribution process"):
        workshop = create_workshop({
            "name": "Wholesale Distribution",
            "mission_statement": mission,
            "industry_context": "Wholesale distribution, UAE",
            "module": module,
        })
        discovery_session = create_session(workshop.id, {
            "name": "Warehouse & Finance Discovery",
            "topics": "Warehousing, payment terms",
        })
        items = DEFAULT_ITEMS if items is None else items
        if items:
            get_services().store.replace_items(discovery_session.id, items, actor="tester")
        return discovery_session

    return _make


@pytest.fixture()
def items_by_number():
    """Callable: session_id → {item_number: ChecklistItem}, freshly loaded."""
    def _load(session_id):
        rows = _db.session.execute(
            _db.select(ChecklistItem)
            .where(ChecklistItem.session_id == session_id)
            .execution_options(populate_existing=True)
        ).scalars()
        return {row.item_number: row for row in rows}

    return _load

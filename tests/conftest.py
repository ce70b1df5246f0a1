"""
Shared pytest fixtures for the ICSR workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_case: ORM factories
    - service: WorkflowService built from the testing config
"""

from datetime import date

import pytest

from icsr import create_app
from icsr.models import db as _db
from icsr.models.auth import User
from icsr.models.case import Case
from icsr.services.workflow_service import WorkflowService
from icsr.utils.crypto import hash_password

DEFAULT_PASSWORD = "correct-horse"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _db.create_all()
        yield
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Return a factory: make_user("alice", role="medical_reviewer") -> User."""
    def _make(username, role="read_only", password=DEFAULT_PASSWORD, is_active=True):
        user = User(
            username=username,
            full_name=username.title(),
            email=f"{username}@example.com",
            role=role,
            password_hash=hash_password(password) if password else None,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def make_case():
    """Return a factory: make_case(workflow_status="Draft", owner=user) -> Case."""
    counter = {"n": 0}

    def _make(workflow_status="Draft", owner=None, assignee=None, data=None, **fields):
        counter["n"] += 1
        case = Case(
            case_number=fields.pop("case_number", f"ICSR-2026-{counter['n']:05d}"),
            workflow_status=workflow_status,
            current_owner=owner.id if isinstance(owner, User) else owner,
            current_assignee=assignee.id if isinstance(assignee, User) else assignee,
            created_by=owner.id if isinstance(owner, User) else owner,
            receipt_date=fields.pop("receipt_date", date(2026, 1, 5)),
            **fields,
        )
        case.data = data or {}
        _db.session.add(case)
        _db.session.commit()
        return case
    return _make


@pytest.fixture()
def service(app):
    """WorkflowService with the testing config defaults."""
    return WorkflowService.from_config(app.config)


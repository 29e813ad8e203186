"""
Shared pytest fixtures for the Intake Progress Service test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - company / make_user / owner: identity rows for the access gate
    - workspace: a workspace owned by ``owner``
    - catalog: five catalog questions across three phases
    - auth_headers: builds Bearer headers for a user
"""

import pytest

from intake import create_app
from intake.models import db as _db
from intake.models.catalog import Question
from intake.models.workspace import Company, User, Workspace, WorkspaceCollaborator
from intake.services.jwt_service import generate_access_token


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
        yield _db.session
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def company():
    c = Company(name="Acme Ltd")
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def make_user(company):
    """Factory: make_user("viewer") → persisted User in ``company``."""
    counter = {"n": 0}

    def _make(role="member", *, company_id=..., is_active=True):
        counter["n"] += 1
        user = User(
            email=f"{role}{counter['n']}@example.com",
            full_name=f"{role.title()} {counter['n']}",
            role_name=role,
            company_id=company.id if company_id is ... else company_id,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def owner(make_user):
    return make_user("member")


@pytest.fixture()
def workspace(owner):
    ws = Workspace(owner_id=owner.id, name="Corner Bakery", purpose="Bread", city="Lyon", country="France")
    _db.session.add(ws)
    _db.session.commit()
    return ws


@pytest.fixture()
def collaborator(make_user, workspace):
    user = make_user("member")
    _db.session.add(WorkspaceCollaborator(workspace_id=workspace.id, user_id=user.id))
    _db.session.commit()
    return user


@pytest.fixture()
def auth_headers():
    """Factory: auth_headers(user) → {"Authorization": "Bearer ..."}."""

    def _headers(user):
        token = generate_access_token(user.id, [user.role_name], user.company_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ── Catalog ──────────────────────────────────────────────────────────────


CATALOG_ROWS = [
    # id, phase, order, severity, used_for
    (1, "initial", 1, "mandatory", "swot"),
    (2, "initial", 2, "mandatory", "swot,pestel"),
    (3, "essential", 1, "mandatory", "pestel"),
    (4, "essential", 2, "optional", ""),
    (5, "good", 1, "mandatory", ""),
]


@pytest.fixture()
def catalog():
    questions = [
        Question(
            id=qid,
            question_text=f"Question {qid}?",
            phase=phase,
            order=order,
            severity=severity,
            used_for=used_for,
            objective=f"Objective {qid}",
            is_active=True,
        )
        for qid, phase, order, severity, used_for in CATALOG_ROWS
    ]
    _db.session.add_all(questions)
    _db.session.commit()
    return {q.id: q for q in questions}

"""
Shared pytest fixtures for the approval engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant / developer / admin / approver_a / approver_b / approver_c / outsider
    - project: Project with three stages and all users above except outsider as members
    - make_proposal: factory that creates (and optionally sends) a proposal
    - approver_of: approver row id of a user within a proposal dict
    - recording_router: replaces the notification router with an in-memory recorder
"""

import pytest

from approval_engine import create_app
from approval_engine.models import db as _db
from approval_engine.models.auth import ProjectMember, Tenant, User, UserRole
from approval_engine.models.project import Project, Stage
from approval_engine.services import approver_roster, proposal_lifecycle
from approval_engine.services.lifecycle_events import set_router
from approval_engine.services.notification import NotificationRouter


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


# ── Identity fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def tenant():
    t = Tenant(name="Test Tenant", slug="test-tenant")
    _db.session.add(t)
    _db.session.commit()
    return t


def _user(tenant, email, role, full_name, company):
    u = User(
        tenant_id=tenant.id,
        email=email,
        full_name=full_name,
        company_name=company,
        role=role.value,
    )
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture()
def developer(tenant):
    return _user(tenant, "dev@studio.test", UserRole.DEVELOPER, "Dana Dev", "Studio")


@pytest.fixture()
def admin(tenant):
    return _user(tenant, "admin@studio.test", UserRole.ADMIN, "Ada Admin", "Studio")


@pytest.fixture()
def approver_a(tenant):
    return _user(tenant, "a@client.test", UserRole.CLIENT, "Alex Client", "Client Co")


@pytest.fixture()
def approver_b(tenant):
    return _user(tenant, "b@client.test", UserRole.CLIENT, "Blair Client", "Client Co")


@pytest.fixture()
def approver_c(tenant):
    return _user(tenant, "c@client.test", UserRole.CLIENT, "Casey Client", "Client Co")


@pytest.fixture()
def outsider(tenant):
    return _user(tenant, "x@elsewhere.test", UserRole.CLIENT, "Xan Outsider", "Elsewhere")


@pytest.fixture()
def project(tenant, developer, admin, approver_a, approver_b, approver_c):
    """Project with stages Design(1), Build(2), Launch(3); pointer at 1."""
    proj = Project(tenant_id=tenant.id, name="Website Redesign")
    _db.session.add(proj)
    _db.session.flush()
    for position, name in enumerate(("Design", "Build", "Launch"), start=1):
        _db.session.add(Stage(project_id=proj.id, name=name, position=position))
    for user in (developer, admin, approver_a, approver_b, approver_c):
        _db.session.add(ProjectMember(project_id=proj.id, user_id=user.id))
    _db.session.commit()
    return proj


@pytest.fixture()
def stages(project):
    return list(project.stages)


# ── Workflow factories ───────────────────────────────────────────────────


@pytest.fixture()
def make_proposal(developer, stages):
    """Create a proposal in *stage* (default: first) with the given approvers.

    Returns the proposal detail dict.  ``send=True`` also sends it.
    """

    def _make(approvers=(), *, stage=None, title="Homepage mockup", content="v1", send=False):
        stage = stage or stages[0]
        proposal = proposal_lifecycle.create_proposal(
            stage.id, title, content, actor_id=developer.id,
        )
        if approvers:
            approver_roster.replace_approvers(
                proposal["id"], [u.id for u in approvers], actor_id=developer.id,
            )
        if send:
            proposal_lifecycle.send(proposal["id"], actor_id=developer.id)
        return proposal_lifecycle.get_proposal(proposal["id"])

    return _make


@pytest.fixture()
def approver_of():
    """Approver row id of a user in a proposal detail dict."""

    def _lookup(proposal: dict, user) -> int:
        for row in proposal["approvers"]:
            if row["user_id"] == user.id:
                return row["id"]
        raise AssertionError(f"user {user.id} is not an approver")

    return _lookup


class RecordingRouter:
    """Router stand-in that remembers every delivered event."""

    def __init__(self):
        self.events = []
        self.fail_on = set()

    def route(self, event):
        if event.event_type in self.fail_on:
            raise RuntimeError(f"router rejected {event.event_type}")
        self.events.append((event.id, event.event_type, event.entity_type, event.entity_id))

    @property
    def types(self):
        return [e[1] for e in self.events]


@pytest.fixture()
def recording_router(app):
    router = RecordingRouter()
    set_router(app, router)
    yield router
    set_router(app, NotificationRouter())

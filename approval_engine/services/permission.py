"""
Role checks for approval workflow mutations.

Each mutating service operation performs exactly one check, at its start,
before any state is read for update.

Rules:
    - proposal owner actions (send, resend, edit, delete, roster edits):
      the proposal's creator or an ADMIN
    - decision actions (record, delete): the approver's own user or an ADMIN
    - proposal creation and all stage gate mutations: a DEVELOPER member of
      the project, or an ADMIN

ADMIN rights never cross tenants.

Usage:
    from approval_engine.services.permission import check_proposal_owner

    actor = get_actor(actor_id)
    check_proposal_owner(proposal, actor, "send")   # raises PermissionDenied
"""

from sqlalchemy import select

from approval_engine.core.exceptions import PermissionDenied
from approval_engine.models import db
from approval_engine.models.auth import ProjectMember, User, UserRole
from approval_engine.models.project import Project


def get_actor(actor_id: int | None) -> User:
    """Resolve the authenticated actor or raise PermissionDenied."""
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or actor.status != "active":
        raise PermissionDenied(actor_id, "authenticate", "unknown or inactive user")
    return actor


def is_project_member(project_id: int, user_id: int) -> bool:
    return db.session.execute(
        select(ProjectMember.id).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    ).first() is not None


def _is_tenant_admin(actor: User, project_id: int) -> bool:
    if not actor.is_admin:
        return False
    project = db.session.get(Project, project_id)
    return project is not None and project.tenant_id == actor.tenant_id


def check_proposal_owner(proposal, actor: User, action: str) -> None:
    if proposal.creator_id == actor.id:
        return
    if _is_tenant_admin(actor, proposal.project_id):
        return
    raise PermissionDenied(actor.id, action, "only the proposal creator or an admin")


def check_approver_self(approver, actor: User, action: str) -> None:
    if approver.user_id == actor.id:
        return
    if _is_tenant_admin(actor, approver.proposal.project_id):
        return
    raise PermissionDenied(actor.id, action, "only the approver or an admin")


def check_project_developer(project_id: int, actor: User, action: str) -> None:
    if _is_tenant_admin(actor, project_id):
        return
    if actor.role == UserRole.DEVELOPER.value and is_project_member(project_id, actor.id):
        return
    raise PermissionDenied(actor.id, action, "requires a developer member of the project")

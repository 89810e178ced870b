"""
Stage Gate: ordered project stages and the current-stage pointer.

Invariants maintained here:
  - stage positions are a dense 1..N permutation after every create,
    reorder and delete
  - ``current_stage_position`` only moves forward, one stage at a time,
    and only when every live proposal of the current stage is FINAL_APPROVED
  - stages before the current one are frozen: they cannot move, be
    displaced, or be deleted

Usage:
    from approval_engine.services.stage_gate import promote, reorder

    promote(project_id=1, actor_id=12)
    reorder(project_id=1, stage_id=9, target_position=3, actor_id=12)
"""

import logging

from sqlalchemy import select

from approval_engine.core.exceptions import (
    FrozenPositionError,
    IncompleteStageError,
    NonEmptyStageError,
    NotCurrentStageError,
    NotFoundError,
    ValidationError,
)
from approval_engine.models import db
from approval_engine.models.approval import ApproverStatus, Proposal, ProposalStatus
from approval_engine.models.lifecycle_event import STAGE_PROMOTED
from approval_engine.models.project import Project, Stage
from approval_engine.services.decision_ledger import derive_approver_status
from approval_engine.services.helpers.concurrency import get_for_update, retry_on_conflict
from approval_engine.services.lifecycle_events import dispatch_pending, emit
from approval_engine.services.permission import check_project_developer, get_actor
from approval_engine.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── helpers ──────────────────────────────────────────────────────────────────

def _ordered_stages(project_id) -> list[Stage]:
    return db.session.execute(
        select(Stage)
        .where(Stage.project_id == project_id)
        .order_by(Stage.position, Stage.id)
    ).scalars().all()


def _renumber(stages) -> None:
    for index, stage in enumerate(stages, start=1):
        if stage.position != index:
            stage.position = index


def _get_stage(stage_id) -> Stage:
    stage = db.session.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError(resource="Stage", resource_id=stage_id)
    return stage


def _live_proposals(stage_id, *, for_update=False) -> list[Proposal]:
    stmt = (
        select(Proposal)
        .where(Proposal.stage_id == stage_id, Proposal.deleted_at.is_(None))
        .order_by(Proposal.created_at, Proposal.id)
    )
    if for_update:
        # locked reads must see what a concurrent decision just committed
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.session.execute(stmt).scalars().all()


def _touch(project: Project) -> None:
    # Bumps the version column so concurrent reorders/promotions conflict
    project.updated_at = utcnow()


# ═════════════════════════════════════════════════════════════════════════════
# Mutations
# ═════════════════════════════════════════════════════════════════════════════

@retry_on_conflict
def create_stage(project_id, name, actor_id=None) -> dict:
    """Append a stage at position N+1."""
    actor = get_actor(actor_id)
    project = get_for_update(Project, project_id)
    check_project_developer(project.id, actor, "stage_create")

    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    stages = _ordered_stages(project.id)
    stage = Stage(project_id=project.id, name=name, position=len(stages) + 1)
    db.session.add(stage)
    _touch(project)
    db.session.commit()
    logger.info("Stage %s created at position %d", stage.id, stage.position,
                extra={"project_id": project.id, "actor_id": actor.id})
    return stage.to_dict()


@retry_on_conflict
def rename_stage(stage_id, name, actor_id=None) -> dict:
    actor = get_actor(actor_id)
    stage = _get_stage(stage_id)
    check_project_developer(stage.project_id, actor, "stage_rename")

    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    stage.name = name
    db.session.commit()
    return stage.to_dict()


@retry_on_conflict
def promote(project_id, actor_id=None) -> dict:
    """
    Advance the current-stage pointer by one.

    Raises:
        NotCurrentStageError: the current stage is the last one.
        IncompleteStageError: a live proposal of the current stage is not
            FINAL_APPROVED; ``details["blocking"]`` lists each one with its
            non-approved approvers.
    """
    actor = get_actor(actor_id)
    project = get_for_update(Project, project_id)
    check_project_developer(project.id, actor, "stage_promote")

    stages = _ordered_stages(project.id)
    position = project.current_stage_position
    if position >= len(stages):
        raise NotCurrentStageError(
            "There is no next stage to promote to",
            details={"project_id": project.id, "current_stage_position": position,
                     "stage_count": len(stages)},
        )
    current = stages[position - 1]

    blocking = []
    for proposal in _live_proposals(current.id, for_update=True):
        if proposal.status == ProposalStatus.FINAL_APPROVED.value:
            continue
        pending = []
        for approver in proposal.approvers:
            status = derive_approver_status(approver.decisions)
            if status != ApproverStatus.APPROVED:
                pending.append({
                    "approver_id": approver.id,
                    "user_id": approver.user_id,
                    "name": approver.name_snapshot,
                    "status": status.value,
                })
        blocking.append({
            "proposal_id": proposal.id,
            "title": proposal.title,
            "status": proposal.status,
            "pending_approvers": pending,
        })
    if blocking:
        raise IncompleteStageError(
            f"Stage '{current.name}' has {len(blocking)} proposal(s) not yet approved",
            details={"stage_id": current.id, "blocking": blocking},
        )

    project.current_stage_position = position + 1
    target = stages[position]
    db.session.flush()
    emit(
        STAGE_PROMOTED,
        entity_type="project",
        entity_id=project.id,
        project_id=project.id,
        actor_id=actor.id,
        payload={
            "from_position": position,
            "to_position": position + 1,
            "stage_id": target.id,
            "stage_name": target.name,
        },
    )
    db.session.commit()
    logger.info("Project %s promoted to stage %d", project.id, position + 1,
                extra={"project_id": project.id, "actor_id": actor.id, "event_type": STAGE_PROMOTED})
    dispatch_pending()
    return current_stage(project.id)


@retry_on_conflict
def reorder(project_id, stage_id, target_position, actor_id=None) -> list[dict]:
    """
    Move a stage to *target_position* (1-based) and renumber densely.

    Raises:
        FrozenPositionError: target before the current stage, or the stage
            itself sits before the current stage.
        ValidationError: target outside 1..N.
    """
    actor = get_actor(actor_id)
    project = get_for_update(Project, project_id)
    check_project_developer(project.id, actor, "stage_reorder")

    try:
        target_position = int(target_position)
    except (TypeError, ValueError):
        raise ValidationError(
            "target_position must be an integer",
            details={"target_position": repr(target_position)},
        ) from None

    stages = _ordered_stages(project.id)
    stage = next((s for s in stages if s.id == stage_id), None)
    if stage is None:
        raise NotFoundError(resource="Stage", resource_id=stage_id)

    current = project.current_stage_position
    if stage.position < current or target_position < current:
        raise FrozenPositionError(
            "Stages before the current stage cannot be moved or displaced",
            details={"stage_id": stage.id, "position": stage.position,
                     "target_position": target_position, "current_stage_position": current},
        )
    if not 1 <= target_position <= len(stages):
        raise ValidationError(
            f"target_position must be between 1 and {len(stages)}",
            details={"target_position": target_position},
        )

    stages.remove(stage)
    stages.insert(target_position - 1, stage)
    _renumber(stages)
    _touch(project)
    db.session.commit()
    logger.info("Stage %s moved to position %d", stage.id, target_position,
                extra={"project_id": project.id, "actor_id": actor.id})
    return [s.to_dict() for s in stages]


@retry_on_conflict
def delete_stage(stage_id, actor_id=None) -> None:
    """
    Delete an empty stage and renumber the remainder.

    Raises:
        NonEmptyStageError: the stage owns live proposals.
        FrozenPositionError: the stage sits before the current stage, or it is
            both the current and the last stage.
    """
    actor = get_actor(actor_id)
    stage = _get_stage(stage_id)
    project = get_for_update(Project, stage.project_id)
    check_project_developer(project.id, actor, "stage_delete")

    live = _live_proposals(stage.id)
    if live:
        raise NonEmptyStageError(
            f"Stage '{stage.name}' still has {len(live)} proposal(s)",
            details={"stage_id": stage.id, "proposal_ids": [p.id for p in live]},
        )
    if stage.position < project.current_stage_position:
        raise FrozenPositionError(
            "Completed stages cannot be deleted",
            details={"stage_id": stage.id, "position": stage.position,
                     "current_stage_position": project.current_stage_position},
        )

    ordered = _ordered_stages(project.id)
    if stage.position == project.current_stage_position and stage.position == len(ordered):
        # the pointer would be left past the last stage
        raise FrozenPositionError(
            "The current stage cannot be deleted while it is the last stage",
            details={"stage_id": stage.id, "position": stage.position,
                     "current_stage_position": project.current_stage_position},
        )

    stages = [s for s in ordered if s.id != stage.id]
    db.session.delete(stage)
    _renumber(stages)
    _touch(project)
    db.session.commit()
    logger.info("Stage %s deleted", stage_id, extra={"project_id": project.id, "actor_id": actor.id})


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def list_stages(project_id) -> list[dict]:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return [s.to_dict() for s in _ordered_stages(project.id)]


def current_stage(project_id) -> dict | None:
    """The stage at the project's current position, or None if it has no stages."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    stage = next(
        (s for s in _ordered_stages(project.id) if s.position == project.current_stage_position),
        None,
    )
    if stage is None:
        return None
    data = stage.to_dict()
    data["current_stage_position"] = project.current_stage_position
    return data


def stage_completion(stage_id) -> dict:
    """Raw counts so callers can tell an empty stage from 0% progress."""
    stage = _get_stage(stage_id)
    proposals = _live_proposals(stage.id)
    approved = sum(1 for p in proposals if p.status == ProposalStatus.FINAL_APPROVED.value)
    return {"stage_id": stage.id, "total": len(proposals), "approved": approved}


def stage_completion_rate(stage_id) -> float:
    """Approved / total over live proposals; 0.0 for an empty stage."""
    counts = stage_completion(stage_id)
    if counts["total"] == 0:
        return 0.0
    return counts["approved"] / counts["total"]

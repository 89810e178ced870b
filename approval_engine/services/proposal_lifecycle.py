"""
Proposal Lifecycle Controller

Owns proposal status transitions:

    DRAFT          --send (≥1 approver)-------------------> UNDER_REVIEW
    UNDER_REVIEW   --all approvers APPROVED---------------> FINAL_APPROVED
    UNDER_REVIEW   --any rejection in the current round---> FINAL_REJECTED
    FINAL_REJECTED --resend (content changed since send)--> UNDER_REVIEW
    FINAL_REJECTED --rejecting decision deleted-----------> UNDER_REVIEW

FINAL_APPROVED is terminal.  ``send``/``resend`` are explicit actions; the
decision-driven moves happen in ``apply_recompute``, which the decision
ledger calls inside the same transaction as every decision mutation.

"Current round" means decisions made at or after ``last_sent_at``.  A
rejection from an earlier round keeps the approver REJECTED (so it still
blocks FINAL_APPROVED) but does not send the proposal back to
FINAL_REJECTED after a resend.

Usage:
    from approval_engine.services.proposal_lifecycle import send, resend

    send(proposal_id=3, actor_id=12)
"""

import logging
from datetime import timedelta

from sqlalchemy import select

from approval_engine.core.exceptions import (
    AlreadySentError,
    EmptyRosterError,
    FrozenPositionError,
    NoChangesError,
    NotFoundError,
    TerminalStateError,
    ValidationError,
    WrongStateError,
)
from approval_engine.models import db
from approval_engine.models.approval import ApproverStatus, Proposal, ProposalStatus
from approval_engine.models.lifecycle_event import (
    PROPOSAL_CREATED,
    PROPOSAL_DELETED,
    PROPOSAL_MODIFIED,
    PROPOSAL_SENT,
    PROPOSAL_STATUS_CHANGED,
)
from approval_engine.models.project import Project, Stage
from approval_engine.services import attachments
from approval_engine.services.decision_ledger import (
    derive_approver_status,
    latest_decision,
    rejected_in_round,
)
from approval_engine.services.helpers.concurrency import get_for_update, retry_on_conflict
from approval_engine.services.lifecycle_events import dispatch_pending, emit
from approval_engine.services.permission import (
    check_project_developer,
    check_proposal_owner,
    get_actor,
)
from approval_engine.utils.helpers import as_aware, utcnow

logger = logging.getLogger(__name__)

DRAFT = ProposalStatus.DRAFT.value
UNDER_REVIEW = ProposalStatus.UNDER_REVIEW.value
FINAL_APPROVED = ProposalStatus.FINAL_APPROVED.value
FINAL_REJECTED = ProposalStatus.FINAL_REJECTED.value

# Explicit actions: allowed source states, target, and the error raised
# from every other state.
PROPOSAL_TRANSITIONS = {
    "send": {
        "from": [DRAFT],
        "to": UNDER_REVIEW,
        "errors": {
            UNDER_REVIEW: AlreadySentError,
            FINAL_APPROVED: AlreadySentError,
            FINAL_REJECTED: WrongStateError,
        },
    },
    "resend": {
        "from": [FINAL_REJECTED],
        "to": UNDER_REVIEW,
        "errors": {
            DRAFT: WrongStateError,
            UNDER_REVIEW: WrongStateError,
            FINAL_APPROVED: WrongStateError,
        },
    },
}

_HINTS = {
    ("send", FINAL_REJECTED): "use resend after editing the proposal",
    ("resend", DRAFT): "proposal was never sent; use send",
}


def validate_transition(proposal: Proposal, action: str) -> dict:
    """Validate whether an explicit action is valid for the proposal's state."""
    rule = PROPOSAL_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": proposal.status, "to": None,
                "reason": f"Unknown action: {action}"}
    if proposal.status not in rule["from"]:
        return {"valid": False, "from": proposal.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{proposal.status}'"}
    return {"valid": True, "from": proposal.status, "to": rule["to"], "reason": None}


def _require_transition(proposal: Proposal, action: str) -> str:
    check = validate_transition(proposal, action)
    if check["valid"]:
        return check["to"]
    error_cls = PROPOSAL_TRANSITIONS[action]["errors"].get(proposal.status, WrongStateError)
    reason = check["reason"]
    hint = _HINTS.get((action, proposal.status))
    if hint:
        reason = f"{reason}: {hint}"
    raise error_cls(reason, details={"proposal_id": proposal.id, "status": proposal.status})


# ── helpers ──────────────────────────────────────────────────────────────────

def changed_since_sent(proposal: Proposal) -> bool:
    if proposal.last_sent_at is None:
        return False
    return as_aware(proposal.updated_at) > as_aware(proposal.last_sent_at)


def aggregate_status(approvers, round_started_at) -> str:
    """Aggregate status of a sent proposal from its roster."""
    statuses = [derive_approver_status(a.decisions) for a in approvers]
    if statuses and all(s == ApproverStatus.APPROVED for s in statuses):
        return FINAL_APPROVED
    if any(rejected_in_round(a, round_started_at) for a in approvers):
        return FINAL_REJECTED
    return UNDER_REVIEW


def _send_stamp(proposal: Proposal):
    """``now``, kept at or past the content edit time and every recorded decision."""
    now = utcnow()
    floor = [as_aware(proposal.updated_at)]
    for approver in proposal.approvers:
        last = latest_decision(approver.decisions)
        if last is not None:
            floor.append(as_aware(last.decided_at) + timedelta(microseconds=1))
    for ts in floor:
        if ts is not None and now < ts:
            now = ts
    return now


def _get_live_proposal(proposal_id) -> Proposal:
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None or proposal.deleted_at is not None:
        raise NotFoundError(resource="Proposal", resource_id=proposal_id)
    return proposal


def _log_extra(proposal, actor_id):
    return {"proposal_id": proposal.id, "project_id": proposal.project_id, "actor_id": actor_id}


def apply_recompute(proposal: Proposal, actor_id=None) -> bool:
    """
    Recompute aggregate status inside the caller's transaction.

    Idempotent.  An empty or never-sent roster forces DRAFT; FINAL_APPROVED
    never moves.  Emits PROPOSAL_STATUS_CHANGED only when the status moves.

    Returns True if the status changed.
    """
    old = proposal.status
    if old == FINAL_APPROVED:
        return False
    if not proposal.approvers or proposal.last_sent_at is None:
        new = DRAFT
    else:
        new = aggregate_status(proposal.approvers, proposal.last_sent_at)
    if new == old:
        return False

    proposal.status = new
    db.session.flush()
    emit(
        PROPOSAL_STATUS_CHANGED,
        entity_type="proposal",
        entity_id=proposal.id,
        project_id=proposal.project_id,
        actor_id=actor_id,
        payload={"title": proposal.title, "old_status": old, "new_status": new},
    )
    logger.info(
        "Proposal %s status %s -> %s", proposal.id, old, new,
        extra=_log_extra(proposal, actor_id),
    )
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Mutations
# ═════════════════════════════════════════════════════════════════════════════

@retry_on_conflict
def create_proposal(stage_id, title, content="", actor_id=None, approver_user_ids=()) -> dict:
    """Open a DRAFT proposal in a stage, optionally with an initial roster."""
    actor = get_actor(actor_id)
    stage = db.session.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError(resource="Stage", resource_id=stage_id)
    check_project_developer(stage.project_id, actor, "proposal_create")

    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    project = db.session.get(Project, stage.project_id)
    if stage.position < project.current_stage_position:
        raise FrozenPositionError(
            "Cannot add proposals to a completed stage",
            details={"stage_id": stage.id, "position": stage.position,
                     "current_stage_position": project.current_stage_position},
        )

    now = utcnow()
    proposal = Proposal(
        project_id=stage.project_id,
        stage_id=stage.id,
        title=title,
        content=content or "",
        status=DRAFT,
        creator_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    db.session.add(proposal)
    db.session.flush()

    if approver_user_ids:
        # Local import: the roster manager reuses this module's recompute
        from approval_engine.services.approver_roster import apply_roster

        apply_roster(proposal, approver_user_ids)

    emit(
        PROPOSAL_CREATED,
        entity_type="proposal",
        entity_id=proposal.id,
        project_id=proposal.project_id,
        actor_id=actor.id,
        payload={"title": proposal.title, "stage_id": stage.id,
                 "approver_count": len(proposal.approvers)},
    )
    db.session.commit()
    logger.info("Proposal %s created", proposal.id, extra=_log_extra(proposal, actor.id))
    dispatch_pending()
    return get_proposal(proposal.id)


@retry_on_conflict
def send(proposal_id, actor_id=None) -> dict:
    """
    Submit a DRAFT proposal for review and freeze its roster.

    Raises:
        EmptyRosterError: no approvers.
        AlreadySentError: already UNDER_REVIEW or FINAL_APPROVED.
        WrongStateError: FINAL_REJECTED (use resend).
    """
    actor = get_actor(actor_id)
    proposal = get_for_update(Proposal, proposal_id)
    check_proposal_owner(proposal, actor, "proposal_send")

    if not proposal.approvers:
        raise EmptyRosterError(
            "Add at least one approver before sending",
            details={"proposal_id": proposal.id},
        )
    target = _require_transition(proposal, "send")
    return _mark_sent(proposal, target, actor.id, resend=False)


@retry_on_conflict
def resend(proposal_id, actor_id=None) -> dict:
    """
    Return an edited FINAL_REJECTED proposal to review.

    Raises:
        WrongStateError: never sent, or not FINAL_REJECTED.
        NoChangesError: content not edited since the last send.
    """
    actor = get_actor(actor_id)
    proposal = get_for_update(Proposal, proposal_id)
    check_proposal_owner(proposal, actor, "proposal_resend")

    if proposal.last_sent_at is None:
        raise WrongStateError(
            "Proposal was never sent; use send",
            details={"proposal_id": proposal.id, "status": proposal.status},
        )
    if not changed_since_sent(proposal):
        raise NoChangesError(
            "Proposal has not been modified since it was last sent",
            details={"proposal_id": proposal.id},
        )
    target = _require_transition(proposal, "resend")
    return _mark_sent(proposal, target, actor.id, resend=True)


def _mark_sent(proposal, target, actor_id, *, resend):
    old = proposal.status
    proposal.last_sent_at = _send_stamp(proposal)
    proposal.status = target
    db.session.flush()

    emit(
        PROPOSAL_SENT,
        entity_type="proposal",
        entity_id=proposal.id,
        project_id=proposal.project_id,
        actor_id=actor_id,
        payload={
            "title": proposal.title,
            "resend": resend,
            "old_status": old,
            "new_status": target,
            "approver_user_ids": [a.user_id for a in proposal.approvers],
        },
    )
    db.session.commit()
    logger.info(
        "Proposal %s %s", proposal.id, "resent" if resend else "sent",
        extra=_log_extra(proposal, actor_id),
    )
    dispatch_pending()
    return get_proposal(proposal.id)


@retry_on_conflict
def edit_content(proposal_id, title=None, content=None, actor_id=None) -> dict:
    """
    Edit title and/or content.  Never changes status.

    ``updated_at`` moves strictly past ``last_sent_at`` so the edit unlocks
    resend.  An edit that changes nothing leaves the proposal untouched.
    """
    actor = get_actor(actor_id)
    proposal = get_for_update(Proposal, proposal_id)
    check_proposal_owner(proposal, actor, "proposal_edit")

    if proposal.status == FINAL_APPROVED:
        raise TerminalStateError(
            "Approved proposals cannot be edited",
            details={"proposal_id": proposal.id},
        )

    changed = []
    if title is not None:
        title = title.strip()
        if not title:
            raise ValidationError("title cannot be empty", details={"title": "required"})
        if title != proposal.title:
            proposal.title = title
            changed.append("title")
    if content is not None and content != proposal.content:
        proposal.content = content
        changed.append("content")

    if not changed:
        return get_proposal(proposal.id)

    now = utcnow()
    last_sent = as_aware(proposal.last_sent_at)
    if last_sent is not None and now <= last_sent:
        now = last_sent + timedelta(microseconds=1)
    proposal.updated_at = now
    db.session.flush()

    emit(
        PROPOSAL_MODIFIED,
        entity_type="proposal",
        entity_id=proposal.id,
        project_id=proposal.project_id,
        actor_id=actor.id,
        payload={"title": proposal.title, "fields": changed},
    )
    db.session.commit()
    logger.info("Proposal %s edited (%s)", proposal.id, ", ".join(changed),
                extra=_log_extra(proposal, actor.id))
    dispatch_pending()
    return get_proposal(proposal.id)


@retry_on_conflict
def recompute_status(proposal_id, actor_id=None) -> str:
    """Recompute and persist aggregate status.  Returns the resulting status."""
    proposal = get_for_update(Proposal, proposal_id)
    changed = apply_recompute(proposal, actor_id)
    db.session.commit()
    if changed:
        dispatch_pending()
    return proposal.status


@retry_on_conflict
def delete_proposal(proposal_id, actor_id=None) -> None:
    """
    Soft-delete a proposal that is not FINAL_APPROVED.

    Attachment references of the proposal and of all its decisions are
    dropped and forwarded to the attachment store after commit.
    """
    actor = get_actor(actor_id)
    proposal = get_for_update(Proposal, proposal_id)
    check_proposal_owner(proposal, actor, "proposal_delete")

    if proposal.status == FINAL_APPROVED:
        raise TerminalStateError(
            "Approved proposals cannot be deleted",
            details={"proposal_id": proposal.id},
        )

    decision_ids = [d.id for a in proposal.approvers for d in a.decisions]
    references = attachments.detach_all("proposal", [proposal.id])
    references += attachments.detach_all("decision", decision_ids)
    proposal.soft_delete()
    db.session.flush()

    emit(
        PROPOSAL_DELETED,
        entity_type="proposal",
        entity_id=proposal.id,
        project_id=proposal.project_id,
        actor_id=actor.id,
        payload={"title": proposal.title, "status": proposal.status},
    )
    db.session.commit()
    logger.info("Proposal %s deleted", proposal.id, extra=_log_extra(proposal, actor.id))
    attachments.forward_deletes(references)
    dispatch_pending()


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def _project(proposal: Proposal, *, with_files: bool) -> dict:
    data = proposal.to_dict()
    statuses = [derive_approver_status(a.decisions) for a in proposal.approvers]
    data["has_attachments"] = with_files
    data["changed_since_sent"] = changed_since_sent(proposal)
    data["approval_summary"] = {
        "total": len(statuses),
        "approved": statuses.count(ApproverStatus.APPROVED),
        "rejected": statuses.count(ApproverStatus.REJECTED),
        "waiting": statuses.count(ApproverStatus.NOT_RESPONDED),
    }
    return data


def get_proposal(proposal_id) -> dict:
    """Detail projection with roster, decision history and attachments."""
    from approval_engine.services.approver_roster import list_approvers

    proposal = _get_live_proposal(proposal_id)
    files = attachments.list_attachments("proposal", proposal.id)
    data = _project(proposal, with_files=bool(files))
    data["attachments"] = files
    data["approvers"] = list_approvers(proposal.id)
    return data


def list_stage_proposals(stage_id) -> list[dict]:
    """Non-deleted proposals of a stage in creation order."""
    if db.session.get(Stage, stage_id) is None:
        raise NotFoundError(resource="Stage", resource_id=stage_id)
    proposals = db.session.execute(
        select(Proposal)
        .where(Proposal.stage_id == stage_id, Proposal.deleted_at.is_(None))
        .order_by(Proposal.created_at, Proposal.id)
    ).scalars().all()
    with_files = attachments.owners_with_attachments("proposal", [p.id for p in proposals])
    return [_project(p, with_files=p.id in with_files) for p in proposals]

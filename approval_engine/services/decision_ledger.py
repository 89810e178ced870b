"""
Decision Ledger: append-only approve/reject log per approver.

Rules:
  - An approver may accumulate any number of REJECTED decisions.
  - The first APPROVED decision is terminal for that approver: nothing more
    can be recorded and the APPROVED decision can never be deleted.
  - A REJECTED decision may be deleted, which reopens the approver to the
    status of its previous decision (or NOT_RESPONDED).

Approver status is derived, never stored:
    APPROVED       if any decision is APPROVED
    REJECTED       else if the most recent decision is REJECTED
    NOT_RESPONDED  otherwise

Every mutation emits one lifecycle event and recomputes the owning
proposal's aggregate status in the same transaction.

Usage:
    from approval_engine.services.decision_ledger import record_decision

    record_decision(approver_id=7, content="Looks good", status="APPROVED", actor_id=12)
"""

import logging
from datetime import timedelta

from approval_engine.core.exceptions import (
    NotFoundError,
    NotReviewableError,
    TerminalStateError,
    ValidationError,
)
from approval_engine.models import db
from approval_engine.models.approval import (
    DECISION_STATUSES,
    Approver,
    ApproverStatus,
    Decision,
    DecisionStatus,
    Proposal,
    ProposalStatus,
)
from approval_engine.models.lifecycle_event import DECISION_CREATED, DECISION_DELETED
from approval_engine.services import attachments
from approval_engine.services.helpers.concurrency import get_for_update, retry_on_conflict
from approval_engine.services.lifecycle_events import dispatch_pending, emit
from approval_engine.services.permission import check_approver_self, get_actor
from approval_engine.utils.helpers import as_aware, utcnow

logger = logging.getLogger(__name__)


# ── Pure derivation ──────────────────────────────────────────────────────────

def derive_approver_status(decisions) -> ApproverStatus:
    """Derive an approver's status from its chronologically ordered decisions."""
    decisions = list(decisions)
    if any(d.status == DecisionStatus.APPROVED.value for d in decisions):
        return ApproverStatus.APPROVED
    if decisions and decisions[-1].status == DecisionStatus.REJECTED.value:
        return ApproverStatus.REJECTED
    return ApproverStatus.NOT_RESPONDED


def latest_decision(decisions):
    decisions = list(decisions)
    return decisions[-1] if decisions else None


def rejected_in_round(approver, round_started_at) -> bool:
    """True if the approver's latest decision is a rejection made since *round_started_at*."""
    last = latest_decision(approver.decisions)
    if last is None or last.status != DecisionStatus.REJECTED.value:
        return False
    if derive_approver_status(approver.decisions) == ApproverStatus.APPROVED:
        return False
    return as_aware(last.decided_at) >= as_aware(round_started_at)


# ── helpers ──────────────────────────────────────────────────────────────────

def _load_approver_for_update(approver_id):
    """Lock the owning proposal, then the approver (proposal → approver lock order)."""
    approver = db.session.get(Approver, approver_id)
    if approver is None:
        raise NotFoundError(resource="Approver", resource_id=approver_id)
    proposal = get_for_update(Proposal, approver.proposal_id)
    approver = get_for_update(Approver, approver_id)
    return proposal, approver


def _decision_timestamp(proposal, approver):
    """``now``, nudged past the send stamp and the approver's previous decision."""
    now = utcnow()
    floor = [as_aware(proposal.last_sent_at), as_aware(approver.last_decided_at)]
    for ts in floor:
        if ts is not None and now <= ts:
            now = ts + timedelta(microseconds=1)
    return now


def _recompute(proposal, actor_id):
    # Local import: proposal_lifecycle depends on this module's derivations
    from approval_engine.services.proposal_lifecycle import apply_recompute

    return apply_recompute(proposal, actor_id)


# ═════════════════════════════════════════════════════════════════════════════
# Mutations
# ═════════════════════════════════════════════════════════════════════════════

@retry_on_conflict
def record_decision(approver_id, content, status, actor_id=None) -> dict:
    """
    Append a decision for an approver.

    Raises:
        ValidationError: status is not APPROVED/REJECTED.
        PermissionDenied: actor is neither the approver nor an admin.
        TerminalStateError: approver already APPROVED.
        NotReviewableError: proposal is not UNDER_REVIEW.
    """
    if status not in DECISION_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(DECISION_STATUSES)}",
            details={"status": status},
        )
    actor = get_actor(actor_id)
    proposal, approver = _load_approver_for_update(approver_id)
    check_approver_self(approver, actor, "decision_record")

    if derive_approver_status(approver.decisions) == ApproverStatus.APPROVED:
        raise TerminalStateError(
            "Approver has already approved; no further decisions are accepted",
            details={"approver_id": approver.id},
        )
    if proposal.status != ProposalStatus.UNDER_REVIEW.value:
        raise NotReviewableError(
            f"Proposal is {proposal.status}; decisions require UNDER_REVIEW",
            details={"proposal_id": proposal.id, "status": proposal.status},
        )

    decided_at = _decision_timestamp(proposal, approver)
    decision = Decision(
        content=content or "",
        status=status,
        decided_by=actor.id,
        decided_at=decided_at,
    )
    approver.decisions.append(decision)
    approver.last_decided_at = decided_at
    db.session.flush()

    emit(
        DECISION_CREATED,
        entity_type="decision",
        entity_id=decision.id,
        project_id=proposal.project_id,
        actor_id=actor.id,
        payload={
            "proposal_id": proposal.id,
            "approver_id": approver.id,
            "approver_name": approver.name_snapshot,
            "title": proposal.title,
            "status": status,
        },
    )
    _recompute(proposal, actor.id)
    db.session.commit()

    logger.info(
        "Decision %s recorded for approver %s", status, approver.id,
        extra={"proposal_id": proposal.id, "project_id": proposal.project_id, "actor_id": actor.id},
    )
    dispatch_pending()

    result = decision.to_dict()
    result["approver_status"] = derive_approver_status(approver.decisions).value
    result["proposal_status"] = proposal.status
    return result


@retry_on_conflict
def delete_decision(decision_id, actor_id=None) -> dict:
    """
    Delete a REJECTED decision and reopen its approver.

    Raises:
        TerminalStateError: the approver has APPROVED, or the proposal is
            FINAL_APPROVED.
    """
    actor = get_actor(actor_id)
    decision = db.session.get(Decision, decision_id)
    if decision is None:
        raise NotFoundError(resource="Decision", resource_id=decision_id)
    proposal, approver = _load_approver_for_update(decision.approver_id)
    check_approver_self(approver, actor, "decision_delete")

    if derive_approver_status(approver.decisions) == ApproverStatus.APPROVED:
        raise TerminalStateError(
            "Approver has already approved; their decisions are frozen",
            details={"approver_id": approver.id, "decision_id": decision.id},
        )
    if proposal.status == ProposalStatus.FINAL_APPROVED.value:
        raise TerminalStateError(
            "Proposal is final-approved; its decisions are frozen",
            details={"proposal_id": proposal.id},
        )

    references = attachments.detach_all("decision", [decision.id])
    approver.decisions.remove(decision)
    previous = latest_decision(approver.decisions)
    approver.last_decided_at = previous.decided_at if previous else None
    db.session.flush()

    emit(
        DECISION_DELETED,
        entity_type="decision",
        entity_id=decision_id,
        project_id=proposal.project_id,
        actor_id=actor.id,
        payload={
            "proposal_id": proposal.id,
            "approver_id": approver.id,
            "approver_name": approver.name_snapshot,
            "title": proposal.title,
        },
    )
    _recompute(proposal, actor.id)
    db.session.commit()

    logger.info(
        "Decision %s deleted", decision_id,
        extra={"proposal_id": proposal.id, "project_id": proposal.project_id, "actor_id": actor.id},
    )
    attachments.forward_deletes(references)
    dispatch_pending()

    return {
        "deleted": decision_id,
        "approver_status": derive_approver_status(approver.decisions).value,
        "proposal_status": proposal.status,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

def _get_approver(approver_id):
    approver = db.session.get(Approver, approver_id)
    if approver is None or approver.proposal.deleted_at is not None:
        raise NotFoundError(resource="Approver", resource_id=approver_id)
    return approver


def approver_status(approver_id) -> str:
    return derive_approver_status(_get_approver(approver_id).decisions).value


def list_decisions(approver_id) -> list[dict]:
    """Chronological decision history of one approver."""
    approver = _get_approver(approver_id)
    with_files = attachments.owners_with_attachments("decision", [d.id for d in approver.decisions])
    items = []
    for d in approver.decisions:
        row = d.to_dict()
        row["has_attachments"] = d.id in with_files
        items.append(row)
    return items

"""
Approver Set Manager: the roster of a proposal.

The roster is editable only while the proposal is DRAFT; ``send`` freezes
it.  Edits are whole-set replacements diffed against the current roster:
kept approvers keep their join order, new ones are appended in the order
given, and an approver that already has decisions can never be dropped.

Usage:
    from approval_engine.services.approver_roster import replace_approvers

    replace_approvers(proposal_id=3, user_ids=[21, 22], actor_id=12)
"""

import logging

from approval_engine.core.exceptions import (
    ImmutableRosterError,
    NotFoundError,
    ValidationError,
)
from approval_engine.models import db
from approval_engine.models.approval import Approver, Proposal, ProposalStatus
from approval_engine.models.auth import User
from approval_engine.models.lifecycle_event import PROPOSAL_MODIFIED
from approval_engine.services import attachments
from approval_engine.services.decision_ledger import derive_approver_status
from approval_engine.services.helpers.concurrency import get_for_update, retry_on_conflict
from approval_engine.services.lifecycle_events import dispatch_pending, emit
from approval_engine.services.permission import check_proposal_owner, get_actor, is_project_member
from approval_engine.services.proposal_lifecycle import apply_recompute

logger = logging.getLogger(__name__)


def _normalise_user_ids(user_ids) -> list[int]:
    if user_ids is None or isinstance(user_ids, (str, bytes)):
        raise ValidationError("user_ids must be a list", details={"user_ids": "invalid"})
    seen = []
    for raw in user_ids:
        try:
            uid = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(
                "user_ids must contain integers", details={"user_ids": repr(raw)},
            ) from None
        if uid not in seen:
            seen.append(uid)
    return seen


def apply_roster(proposal: Proposal, user_ids) -> dict:
    """
    Diff the roster against *user_ids* inside the caller's transaction.

    Returns {"added": [...], "removed": [...]} (user ids).  Fails before
    touching anything if a user is not a project member or a dropped
    approver already has decisions.
    """
    wanted = _normalise_user_ids(user_ids)

    invalid = []
    users = {}
    for uid in wanted:
        user = db.session.get(User, uid)
        if user is None or not is_project_member(proposal.project_id, uid):
            invalid.append(uid)
        else:
            users[uid] = user
    if invalid:
        raise ValidationError(
            "Approvers must be members of the proposal's project",
            details={"user_ids": invalid},
        )

    current = {a.user_id: a for a in proposal.approvers}
    dropped = [a for uid, a in current.items() if uid not in wanted]
    locked = [a.user_id for a in dropped if a.decisions]
    if locked:
        raise ImmutableRosterError(
            "Approvers with recorded decisions cannot be removed",
            details={"proposal_id": proposal.id, "user_ids": locked},
        )

    for approver in dropped:
        proposal.approvers.remove(approver)

    next_seq = max((a.sequence for a in current.values()), default=0) + 1
    added = []
    for uid in wanted:
        if uid in current:
            continue
        user = users[uid]
        proposal.approvers.append(Approver(
            user_id=uid,
            sequence=next_seq,
            name_snapshot=user.full_name,
            company_snapshot=user.company_name,
        ))
        next_seq += 1
        added.append(uid)

    db.session.flush()
    return {"added": added, "removed": [a.user_id for a in dropped]}


@retry_on_conflict
def replace_approvers(proposal_id, user_ids, actor_id=None) -> list[dict]:
    """
    Replace the roster of a DRAFT proposal.

    Raises:
        ImmutableRosterError: proposal not DRAFT, or a dropped approver has decisions.
        ValidationError: a user is not a member of the project.
    """
    actor = get_actor(actor_id)
    proposal = get_for_update(Proposal, proposal_id)
    check_proposal_owner(proposal, actor, "roster_edit")

    if proposal.status != ProposalStatus.DRAFT.value:
        raise ImmutableRosterError(
            f"Roster is frozen once the proposal is sent (status={proposal.status})",
            details={"proposal_id": proposal.id, "status": proposal.status},
        )

    diff = apply_roster(proposal, user_ids)
    if diff["added"] or diff["removed"]:
        emit(
            PROPOSAL_MODIFIED,
            entity_type="proposal",
            entity_id=proposal.id,
            project_id=proposal.project_id,
            actor_id=actor.id,
            payload={"title": proposal.title, "fields": ["approvers"], "roster": diff},
        )
        apply_recompute(proposal, actor.id)
        db.session.commit()
        logger.info(
            "Roster of proposal %s changed: +%d -%d",
            proposal.id, len(diff["added"]), len(diff["removed"]),
            extra={"proposal_id": proposal.id, "project_id": proposal.project_id, "actor_id": actor.id},
        )
        dispatch_pending()
    else:
        db.session.commit()

    return list_approvers(proposal.id)


def list_approvers(proposal_id) -> list[dict]:
    """Roster in join order with derived status and decision history."""
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None or proposal.deleted_at is not None:
        raise NotFoundError(resource="Proposal", resource_id=proposal_id)

    decision_ids = [d.id for a in proposal.approvers for d in a.decisions]
    with_files = attachments.owners_with_attachments("decision", decision_ids)

    items = []
    for approver in proposal.approvers:
        row = approver.to_dict()
        row["status"] = derive_approver_status(approver.decisions).value
        row["decisions"] = []
        for d in approver.decisions:
            entry = d.to_dict()
            entry["has_attachments"] = d.id in with_files
            row["decisions"].append(entry)
        items.append(row)
    return items

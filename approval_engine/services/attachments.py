"""
Attachment references for proposals and decisions.

The engine keeps only opaque references.  Content lives in an external
store that implements:

    class AttachmentStore(Protocol):
        def delete(self, reference: str) -> None: ...

When an owning proposal or decision is removed, the service drops the
reference rows inside the caller's transaction (``detach_all``) and the
caller forwards the deletes to the store after commit (``forward_deletes``).
Store failures are logged and never undo the committed transition.
"""

import logging
from typing import Protocol

from flask import current_app, has_app_context
from sqlalchemy import delete, func, select

from approval_engine.core.exceptions import NotFoundError, TerminalStateError, ValidationError
from approval_engine.models import db
from approval_engine.models.approval import Decision, Proposal, ProposalStatus
from approval_engine.models.attachment import ATTACHMENT_KINDS, OWNER_TYPES, Attachment
from approval_engine.services.permission import (
    check_approver_self,
    check_proposal_owner,
    get_actor,
)

logger = logging.getLogger(__name__)

STORE_EXTENSION_KEY = "attachment_store"


class AttachmentStore(Protocol):
    def delete(self, reference: str) -> None: ...


class LoggingAttachmentStore:
    """Store used when the host application does not configure one."""

    def delete(self, reference: str) -> None:
        logger.info("Attachment delete forwarded: %s", reference)


def get_store():
    if has_app_context():
        store = current_app.extensions.get(STORE_EXTENSION_KEY)
        if store is not None:
            return store
    return LoggingAttachmentStore()


# ── helpers ──────────────────────────────────────────────────────────────────

def _resolve_owner(owner_type: str, owner_id: int):
    if owner_type not in OWNER_TYPES:
        raise ValidationError(
            f"owner_type must be one of {sorted(OWNER_TYPES)}",
            details={"owner_type": owner_type},
        )
    model = Proposal if owner_type == "proposal" else Decision
    owner = db.session.get(model, owner_id)
    if owner is None or getattr(owner, "deleted_at", None) is not None:
        raise NotFoundError(resource=model.__name__, resource_id=owner_id)
    return owner


def _check_owner_access(owner_type: str, owner, actor, action: str) -> None:
    if owner_type == "proposal":
        check_proposal_owner(owner, actor, action)
        if owner.status == ProposalStatus.FINAL_APPROVED.value:
            raise TerminalStateError(
                "Attachments of an approved proposal are frozen",
                details={"proposal_id": owner.id},
            )
    else:
        check_approver_self(owner.approver, actor, action)


# ── public API ───────────────────────────────────────────────────────────────

def add_attachment(owner_type, owner_id, *, kind, reference, label=None, actor_id=None) -> dict:
    actor = get_actor(actor_id)
    owner = _resolve_owner(owner_type, owner_id)
    _check_owner_access(owner_type, owner, actor, "attachment_add")

    if kind not in ATTACHMENT_KINDS:
        raise ValidationError(f"kind must be one of {sorted(ATTACHMENT_KINDS)}", details={"kind": kind})
    if not reference or not str(reference).strip():
        raise ValidationError("reference is required", details={"reference": "required"})

    attachment = Attachment(
        owner_type=owner_type,
        owner_id=owner_id,
        kind=kind,
        reference=str(reference).strip(),
        label=label,
        created_by=actor.id,
    )
    db.session.add(attachment)
    db.session.commit()
    logger.info("Attachment added to %s %s", owner_type, owner_id, extra={"actor_id": actor.id})
    return attachment.to_dict()


def remove_attachment(attachment_id, actor_id=None) -> None:
    actor = get_actor(actor_id)
    attachment = db.session.get(Attachment, attachment_id)
    if attachment is None:
        raise NotFoundError(resource="Attachment", resource_id=attachment_id)
    owner = _resolve_owner(attachment.owner_type, attachment.owner_id)
    _check_owner_access(attachment.owner_type, owner, actor, "attachment_remove")

    reference = attachment.reference
    db.session.delete(attachment)
    db.session.commit()
    forward_deletes([reference])


def list_attachments(owner_type: str, owner_id: int) -> list[dict]:
    rows = db.session.execute(
        select(Attachment)
        .where(Attachment.owner_type == owner_type, Attachment.owner_id == owner_id)
        .order_by(Attachment.id)
    ).scalars().all()
    return [a.to_dict() for a in rows]


def has_attachments(owner_type: str, owner_id: int) -> bool:
    count = db.session.execute(
        select(func.count(Attachment.id))
        .where(Attachment.owner_type == owner_type, Attachment.owner_id == owner_id)
    ).scalar_one()
    return count > 0


def owners_with_attachments(owner_type: str, owner_ids) -> set[int]:
    """Subset of *owner_ids* that own at least one attachment."""
    owner_ids = list(owner_ids)
    if not owner_ids:
        return set()
    rows = db.session.execute(
        select(Attachment.owner_id)
        .where(Attachment.owner_type == owner_type, Attachment.owner_id.in_(owner_ids))
        .distinct()
    ).scalars().all()
    return set(rows)


def detach_all(owner_type: str, owner_ids) -> list[str]:
    """Delete the reference rows of the given owners; return their references.

    Runs inside the caller's transaction (flush only).
    """
    owner_ids = list(owner_ids)
    if not owner_ids:
        return []
    references = db.session.execute(
        select(Attachment.reference)
        .where(Attachment.owner_type == owner_type, Attachment.owner_id.in_(owner_ids))
        .order_by(Attachment.id)
    ).scalars().all()
    if references:
        db.session.execute(
            delete(Attachment)
            .where(Attachment.owner_type == owner_type, Attachment.owner_id.in_(owner_ids))
        )
        db.session.flush()
    return list(references)


def forward_deletes(references, store=None) -> int:
    """Ask the store to delete each reference.  Returns the failure count."""
    store = store or get_store()
    failures = 0
    for reference in references:
        try:
            store.delete(reference)
        except Exception:
            failures += 1
            logger.exception("Attachment store delete failed for %s", reference)
    return failures

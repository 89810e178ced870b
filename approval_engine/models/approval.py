"""
Approval Workflow Engine
Approval domain models: Proposal, Approver, Decision.

Models:
    - Proposal: unit of work submitted for multi-party approval in one stage
    - Approver: user registered against a proposal (roster row)
    - Decision: append-only approve/reject event recorded by an approver

Statuses are closed ``str`` enums.  An approver's status is never stored;
it is derived from the decision log by ``decision_ledger.derive_approver_status``.
"""

from datetime import datetime, timezone
from enum import Enum

from approval_engine.models import db
from approval_engine.models.soft_delete import SoftDeleteMixin


# ── Enums ────────────────────────────────────────────────────────────────────

class ProposalStatus(str, Enum):
    DRAFT = "DRAFT"
    UNDER_REVIEW = "UNDER_REVIEW"
    FINAL_APPROVED = "FINAL_APPROVED"
    FINAL_REJECTED = "FINAL_REJECTED"


class ApproverStatus(str, Enum):
    NOT_RESPONDED = "NOT_RESPONDED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DecisionStatus(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


DECISION_STATUSES = frozenset(s.value for s in DecisionStatus)


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# PROPOSAL
# ═════════════════════════════════════════════════════════════════════════════

class Proposal(SoftDeleteMixin, db.Model):
    """
    Approval request authored by a developer-side user.

    Business rules:
    - Roster is editable only while status is DRAFT.
    - ``updated_at`` moves only on content edits; ``last_sent_at`` on
      send/resend.  ``updated_at > last_sent_at`` means "changed since sent".
    - FINAL_APPROVED is terminal: content, roster and decisions freeze.
    """

    __tablename__ = "proposals"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_id = db.Column(
        db.Integer,
        db.ForeignKey("stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    content = db.Column(db.Text, nullable=False, default="")
    status = db.Column(
        db.String(20),
        nullable=False,
        default=ProposalStatus.DRAFT.value,
        comment="DRAFT | UNDER_REVIEW | FINAL_APPROVED | FINAL_REJECTED",
    )
    creator_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow,
        comment="Content modification time; not touched by status changes",
    )
    last_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False)

    creator = db.relationship("User", foreign_keys=[creator_id])
    approvers = db.relationship(
        "Approver",
        back_populates="proposal",
        order_by="Approver.sequence",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        db.Index("ix_proposals_stage_status", "stage_id", "status"),
    )
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        creator = self.creator
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_id": self.stage_id,
            "title": self.title,
            "content": self.content,
            "status": self.status,
            "creator": {
                "id": creator.id,
                "name": creator.full_name,
                "company_name": creator.company_name,
            } if creator else None,
            "approver_count": len(self.approvers),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_sent_at": _iso(self.last_sent_at),
            "deleted_at": _iso(self.deleted_at),
        }

    def __repr__(self) -> str:
        return f"<Proposal {self.id}: {self.status} '{self.title[:40]}'>"


# ═════════════════════════════════════════════════════════════════════════════
# APPROVER
# ═════════════════════════════════════════════════════════════════════════════

class Approver(db.Model):
    """
    Roster row linking a user to a proposal.

    Display name and company are snapshots taken when the approver joins;
    the users table stays authoritative.  ``version`` is bumped on every
    decision write so that two racing decisions cannot both commit.
    """

    __tablename__ = "approvers"

    id = db.Column(db.Integer, primary_key=True)
    proposal_id = db.Column(
        db.Integer,
        db.ForeignKey("proposals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = db.Column(db.Integer, nullable=False, comment="Join order within the roster")
    name_snapshot = db.Column(db.String(200), nullable=True)
    company_snapshot = db.Column(db.String(200), nullable=True)
    last_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    version = db.Column(db.Integer, nullable=False)

    proposal = db.relationship("Proposal", back_populates="approvers")
    decisions = db.relationship(
        "Decision",
        back_populates="approver",
        order_by="(Decision.decided_at, Decision.id)",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        db.UniqueConstraint("proposal_id", "user_id", name="uq_approvers_proposal_user"),
    )
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "proposal_id": self.proposal_id,
            "user_id": self.user_id,
            "sequence": self.sequence,
            "name": self.name_snapshot,
            "company_name": self.company_snapshot,
            "last_decided_at": _iso(self.last_decided_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Approver {self.id}: user={self.user_id} proposal={self.proposal_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# DECISION
# ═════════════════════════════════════════════════════════════════════════════

class Decision(db.Model):
    """
    Immutable decision log entry.

    - Never updated.  REJECTED rows may be deleted; APPROVED rows never.
    - At most one APPROVED row per approver, backed by a partial unique index.
    """

    __tablename__ = "decisions"

    id = db.Column(db.Integer, primary_key=True)
    approver_id = db.Column(
        db.Integer,
        db.ForeignKey("approvers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content = db.Column(db.Text, nullable=False, default="")
    status = db.Column(db.String(20), nullable=False, comment="APPROVED | REJECTED")
    decided_by = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    decided_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    approver = db.relationship("Approver", back_populates="decisions")

    __table_args__ = (
        db.Index(
            "uq_decisions_single_approved",
            "approver_id",
            unique=True,
            postgresql_where=db.text("status = 'APPROVED'"),
            sqlite_where=db.text("status = 'APPROVED'"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "approver_id": self.approver_id,
            "content": self.content,
            "status": self.status,
            "decided_by": self.decided_by,
            "decided_at": _iso(self.decided_at),
        }

    def __repr__(self) -> str:
        return f"<Decision {self.id}: approver={self.approver_id} {self.status}>"

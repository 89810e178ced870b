"""
Approval Workflow Engine
Lifecycle event outbox.

Models:
    - LifecycleEvent: append-only record of every proposal, decision and
      stage transition, written in the same transaction as the mutation and
      handed to the notification router after commit.
"""

import json
from datetime import datetime, timezone

from approval_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROPOSAL_CREATED = "PROPOSAL_CREATED"
PROPOSAL_MODIFIED = "PROPOSAL_MODIFIED"
PROPOSAL_DELETED = "PROPOSAL_DELETED"
PROPOSAL_SENT = "PROPOSAL_SENT"
PROPOSAL_STATUS_CHANGED = "PROPOSAL_STATUS_CHANGED"
DECISION_CREATED = "DECISION_CREATED"
DECISION_DELETED = "DECISION_DELETED"
STAGE_PROMOTED = "STAGE_PROMOTED"

EVENT_TYPES = {
    PROPOSAL_CREATED,
    PROPOSAL_MODIFIED,
    PROPOSAL_DELETED,
    PROPOSAL_SENT,
    PROPOSAL_STATUS_CHANGED,
    DECISION_CREATED,
    DECISION_DELETED,
    STAGE_PROMOTED,
}

ENTITY_TYPES = {"proposal", "decision", "stage", "project"}

DELIVERY_PENDING = "pending"
DELIVERY_DELIVERED = "delivered"
DELIVERY_FAILED = "failed"


class LifecycleEvent(db.Model):
    """
    Outbox row for one engine event.

    ``id`` is the delivery order.  Rows are never replayed once they leave
    ``pending``; a failed delivery keeps its error text for operators.
    """

    __tablename__ = "lifecycle_events"
    __table_args__ = (
        db.Index("idx_lifecycle_entity", "entity_type", "entity_id"),
        db.Index("idx_lifecycle_project", "project_id"),
        db.Index("idx_lifecycle_delivery", "delivery_state"),
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(
        db.String(40), nullable=False,
        comment="PROPOSAL_SENT | DECISION_CREATED | STAGE_PROMOTED | …",
    )
    entity_type = db.Column(
        db.String(20), nullable=False,
        comment="proposal | decision | stage | project",
    )
    entity_id = db.Column(db.Integer, nullable=False)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
    )
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    payload_json = db.Column(db.Text, default="{}")
    occurred_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    delivery_state = db.Column(
        db.String(20), nullable=False, default=DELIVERY_PENDING,
        comment="pending | delivered | failed",
    )
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def payload(self) -> dict:
        """Deserialise *payload_json* to a Python dict."""
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "project_id": self.project_id,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "delivery_state": self.delivery_state,
        }

    def __repr__(self):
        return f"<LifecycleEvent {self.id}: {self.event_type} on {self.entity_type}/{self.entity_id}>"

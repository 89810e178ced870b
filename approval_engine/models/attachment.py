"""Attachment references owned by proposals and decisions.

The engine never stores file content.  ``reference`` is an opaque key
understood only by the configured attachment store.
"""

from datetime import datetime, timezone

from approval_engine.models import db

OWNER_TYPES = {"proposal", "decision"}
ATTACHMENT_KINDS = {"file", "link"}


class Attachment(db.Model):
    __tablename__ = "attachments"

    id = db.Column(db.Integer, primary_key=True)
    owner_type = db.Column(db.String(20), nullable=False, comment="proposal | decision")
    owner_id = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(10), nullable=False, default="file", comment="file | link")
    reference = db.Column(db.String(500), nullable=False)
    label = db.Column(db.String(300), nullable=True)
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("idx_attachments_owner", "owner_type", "owner_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "owner_type": self.owner_type,
            "owner_id": self.owner_id,
            "kind": self.kind,
            "reference": self.reference,
            "label": self.label,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Attachment {self.id}: {self.owner_type}/{self.owner_id} {self.kind}>"

"""
Soft Delete Mixin.

Adds a `deleted_at` timestamp column for soft delete.
Proposals use it so that stage completion counts can ignore deleted
proposals while the decision history stays on disk.

Usage:
    class Proposal(SoftDeleteMixin, db.Model):
        ...

    proposal.soft_delete()
    proposal.is_deleted  # True
"""

from datetime import datetime, timezone

from approval_engine.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

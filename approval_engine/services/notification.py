"""
Approval Workflow Engine
Notification Service: in-app fan-out of lifecycle events.

``NotificationRouter`` is the default router installed by ``create_app``.
It turns each outbox event into one ``Notification`` row per project member
other than the actor.  ``NotificationService`` is the read/ack surface used
by the notification blueprint.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from approval_engine.models import db
from approval_engine.models.auth import ProjectMember
from approval_engine.models.lifecycle_event import (
    DECISION_CREATED,
    DECISION_DELETED,
    PROPOSAL_CREATED,
    PROPOSAL_DELETED,
    PROPOSAL_MODIFIED,
    PROPOSAL_SENT,
    PROPOSAL_STATUS_CHANGED,
    STAGE_PROMOTED,
)
from approval_engine.models.notification import Notification

logger = logging.getLogger(__name__)


# ── Message templates ────────────────────────────────────────────────────────

_TEMPLATES = {
    PROPOSAL_CREATED: ("proposal", "info", "New proposal: {title}"),
    PROPOSAL_MODIFIED: ("proposal", "info", "Proposal updated: {title}"),
    PROPOSAL_DELETED: ("proposal", "warning", "Proposal deleted: {title}"),
    PROPOSAL_SENT: ("proposal", "info", "Approval requested: {title}"),
    PROPOSAL_STATUS_CHANGED: ("proposal", "info", "Proposal {title} is now {new_status}"),
    DECISION_CREATED: ("decision", "info", "{approver_name} {status_word} {title}"),
    DECISION_DELETED: ("decision", "info", "{approver_name} withdrew a decision on {title}"),
    STAGE_PROMOTED: ("stage", "success", "Project moved to stage {to_position}: {stage_name}"),
}

_STATUS_SEVERITY = {
    "FINAL_APPROVED": "success",
    "FINAL_REJECTED": "warning",
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render_title(event) -> tuple[str, str, str]:
    """Return (category, severity, title) for an outbox event."""
    category, severity, template = _TEMPLATES.get(
        event.event_type, ("system", "info", event.event_type),
    )
    payload = _SafeDict(event.payload)
    if event.event_type == PROPOSAL_STATUS_CHANGED:
        severity = _STATUS_SEVERITY.get(payload.get("new_status"), severity)
    if event.event_type == DECISION_CREATED:
        approved = payload.get("status") == "APPROVED"
        payload["status_word"] = "approved" if approved else "rejected"
        severity = "success" if approved else "warning"
    return category, severity, template.format_map(payload)[:300]


class NotificationRouter:
    """Default router: one in-app notification per project member except the actor."""

    def route(self, event) -> None:
        if event.project_id is None:
            return
        recipients = db.session.execute(
            select(ProjectMember.user_id)
            .where(ProjectMember.project_id == event.project_id)
            .order_by(ProjectMember.user_id)
        ).scalars().all()

        category, severity, title = render_title(event)
        created = 0
        for user_id in recipients:
            if user_id == event.actor_id:
                continue
            db.session.add(Notification(
                project_id=event.project_id,
                recipient_id=user_id,
                event_id=event.id,
                event_type=event.event_type,
                title=title,
                message=event.payload.get("message", ""),
                category=category,
                severity=severity,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
            ))
            created += 1
        db.session.flush()
        logger.debug(
            "Routed %s to %d recipients", event.event_type, created,
            extra={"event_type": event.event_type, "project_id": event.project_id},
        )


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, project_id=None, unread_only=False,
                           limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.
        """
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if project_id:
            q = q.filter_by(project_id=project_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient_id, project_id=None):
        """Return count of unread notifications."""
        q = Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
        if project_id:
            q = q.filter_by(project_id=project_id)
        return q.count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read.  Returns None if not the recipient's."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id, project_id=None):
        """Mark all notifications for a recipient as read."""
        q = Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
        if project_id:
            q = q.filter_by(project_id=project_id)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count

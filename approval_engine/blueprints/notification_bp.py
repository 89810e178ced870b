"""
Notification Blueprint: in-app notifications and the lifecycle event log.

Endpoints:
    GET   /api/v1/notifications                     actor's notifications (newest first)
          Query params: project_id, unread_only, limit, offset
    GET   /api/v1/notifications/unread-count
    POST  /api/v1/notifications/<nid>/read
    POST  /api/v1/notifications/read-all
    GET   /api/v1/projects/<pid>/events             outbox rows in emission order
          Query params: entity_type, entity_id, event_type, delivery_state
"""

import logging

from flask import Blueprint, jsonify, request

from approval_engine.blueprints import paginate_args, register_error_handlers, require_actor
from approval_engine.models.project import Project
from approval_engine.services.lifecycle_events import list_events
from approval_engine.services.notification import NotificationService
from approval_engine.utils.errors import E, api_error
from approval_engine.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    actor_id, err = require_actor()
    if err:
        return err
    limit, offset = paginate_args()
    items, total = NotificationService.list_for_recipient(
        actor_id,
        project_id=request.args.get("project_id", type=int),
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    actor_id, err = require_actor()
    if err:
        return err
    count = NotificationService.unread_count(
        actor_id, project_id=request.args.get("project_id", type=int),
    )
    return jsonify({"unread_count": count}), 200


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    actor_id, err = require_actor()
    if err:
        return err
    notif = NotificationService.mark_read(notification_id, actor_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict()), 200


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    count = NotificationService.mark_all_read(actor_id, project_id=data.get("project_id"))
    return jsonify({"marked_read": count}), 200


@notification_bp.route("/projects/<int:project_id>/events", methods=["GET"])
def project_events(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    limit, _ = paginate_args(default_limit=100, max_limit=500)
    events = list_events(
        project_id=project_id,
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id", type=int),
        event_type=request.args.get("event_type"),
        delivery_state=request.args.get("delivery_state"),
        limit=limit,
    )
    return jsonify([e.to_dict() for e in events]), 200

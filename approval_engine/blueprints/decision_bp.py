"""
Decision Blueprint: approve/reject decisions recorded by approvers.

Endpoints:
    GET    /api/v1/approvers/<aid>/decisions       chronological history
    POST   /api/v1/approvers/<aid>/decisions       record a decision
           Body: { "status": "APPROVED|REJECTED", "content"? }
    DELETE /api/v1/decisions/<did>                 delete a REJECTED decision
    POST   /api/v1/decisions/<did>/attachments     Body: { "kind", "reference", "label"? }
"""

import logging

from flask import Blueprint, jsonify, request

from approval_engine.blueprints import register_error_handlers, require_actor
from approval_engine.models.approval import DECISION_STATUSES
from approval_engine.services import attachments, decision_ledger
from approval_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

decision_bp = Blueprint("decision", __name__, url_prefix="/api/v1")
register_error_handlers(decision_bp)


@decision_bp.route("/approvers/<int:approver_id>/decisions", methods=["GET"])
def list_decisions(approver_id):
    return jsonify({
        "approver_id": approver_id,
        "status": decision_ledger.approver_status(approver_id),
        "decisions": decision_ledger.list_decisions(approver_id),
    }), 200


@decision_bp.route("/approvers/<int:approver_id>/decisions", methods=["POST"])
def record_decision(approver_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}

    status = (data.get("status") or "").strip().upper()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    if status not in DECISION_STATUSES:
        return api_error(
            E.VALIDATION_INVALID,
            f"Invalid status '{status}'. Must be one of: {sorted(DECISION_STATUSES)}",
        )

    decision = decision_ledger.record_decision(
        approver_id, data.get("content", ""), status, actor_id=actor_id,
    )
    return jsonify(decision), 201


@decision_bp.route("/decisions/<int:decision_id>", methods=["DELETE"])
def delete_decision(decision_id):
    actor_id, err = require_actor()
    if err:
        return err
    return jsonify(decision_ledger.delete_decision(decision_id, actor_id=actor_id)), 200


@decision_bp.route("/decisions/<int:decision_id>/attachments", methods=["POST"])
def add_decision_attachment(decision_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("reference"):
        return api_error(E.VALIDATION_REQUIRED, "reference is required")

    attachment = attachments.add_attachment(
        "decision", decision_id,
        kind=data.get("kind", "file"),
        reference=data["reference"],
        label=data.get("label"),
        actor_id=actor_id,
    )
    return jsonify(attachment), 201

"""
Proposal Blueprint: proposal lifecycle, roster and attachments.

Endpoints:
    GET    /api/v1/stages/<sid>/proposals          list live proposals of a stage
    POST   /api/v1/stages/<sid>/proposals          create (DRAFT)
           Body: { "title", "content"?, "approver_user_ids"? }
    GET    /api/v1/proposals/<pid>                 detail with roster + history
    PUT    /api/v1/proposals/<pid>                 edit title/content
    DELETE /api/v1/proposals/<pid>                 soft delete (not FINAL_APPROVED)
    POST   /api/v1/proposals/<pid>/send            DRAFT → UNDER_REVIEW
    POST   /api/v1/proposals/<pid>/resend          FINAL_REJECTED → UNDER_REVIEW
    GET    /api/v1/proposals/<pid>/approvers       roster
    PUT    /api/v1/proposals/<pid>/approvers       replace roster
           Body: { "user_ids": [int, ...] }
    GET    /api/v1/proposals/<pid>/summary         approver counts
    GET    /api/v1/proposals/<pid>/attachments
    POST   /api/v1/proposals/<pid>/attachments     Body: { "kind", "reference", "label"? }
    DELETE /api/v1/attachments/<aid>

The acting user is read from the X-User-Id header.
"""

import logging

from flask import Blueprint, jsonify, request

from approval_engine.blueprints import register_error_handlers, require_actor
from approval_engine.services import approver_roster, attachments, progress, proposal_lifecycle
from approval_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

proposal_bp = Blueprint("proposal", __name__, url_prefix="/api/v1")
register_error_handlers(proposal_bp)


# ═════════════════════════════════════════════════════════════════════════
# Proposals
# ═════════════════════════════════════════════════════════════════════════

@proposal_bp.route("/stages/<int:stage_id>/proposals", methods=["GET"])
def list_proposals(stage_id):
    return jsonify(proposal_lifecycle.list_stage_proposals(stage_id)), 200


@proposal_bp.route("/stages/<int:stage_id>/proposals", methods=["POST"])
def create_proposal(stage_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}

    title = (data.get("title") or "").strip()
    if not title:
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    approver_user_ids = data.get("approver_user_ids") or []
    if not isinstance(approver_user_ids, list):
        return api_error(E.VALIDATION_INVALID, "approver_user_ids must be a list")

    proposal = proposal_lifecycle.create_proposal(
        stage_id,
        title,
        data.get("content", ""),
        actor_id=actor_id,
        approver_user_ids=approver_user_ids,
    )
    return jsonify(proposal), 201


@proposal_bp.route("/proposals/<int:proposal_id>", methods=["GET"])
def get_proposal(proposal_id):
    return jsonify(proposal_lifecycle.get_proposal(proposal_id)), 200


@proposal_bp.route("/proposals/<int:proposal_id>", methods=["PUT"])
def edit_proposal(proposal_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if "title" not in data and "content" not in data:
        return api_error(E.VALIDATION_REQUIRED, "title or content is required")

    proposal = proposal_lifecycle.edit_content(
        proposal_id,
        title=data.get("title"),
        content=data.get("content"),
        actor_id=actor_id,
    )
    return jsonify(proposal), 200


@proposal_bp.route("/proposals/<int:proposal_id>", methods=["DELETE"])
def delete_proposal(proposal_id):
    actor_id, err = require_actor()
    if err:
        return err
    proposal_lifecycle.delete_proposal(proposal_id, actor_id=actor_id)
    return jsonify({"deleted": proposal_id}), 200


@proposal_bp.route("/proposals/<int:proposal_id>/send", methods=["POST"])
def send_proposal(proposal_id):
    actor_id, err = require_actor()
    if err:
        return err
    return jsonify(proposal_lifecycle.send(proposal_id, actor_id=actor_id)), 200


@proposal_bp.route("/proposals/<int:proposal_id>/resend", methods=["POST"])
def resend_proposal(proposal_id):
    actor_id, err = require_actor()
    if err:
        return err
    return jsonify(proposal_lifecycle.resend(proposal_id, actor_id=actor_id)), 200


@proposal_bp.route("/proposals/<int:proposal_id>/summary", methods=["GET"])
def proposal_summary(proposal_id):
    return jsonify(progress.get_status_summary(proposal_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Roster
# ═════════════════════════════════════════════════════════════════════════

@proposal_bp.route("/proposals/<int:proposal_id>/approvers", methods=["GET"])
def list_approvers(proposal_id):
    return jsonify(approver_roster.list_approvers(proposal_id)), 200


@proposal_bp.route("/proposals/<int:proposal_id>/approvers", methods=["PUT"])
def replace_approvers(proposal_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    user_ids = data.get("user_ids")
    if not isinstance(user_ids, list):
        return api_error(E.VALIDATION_REQUIRED, "user_ids (list) is required")

    roster = approver_roster.replace_approvers(proposal_id, user_ids, actor_id=actor_id)
    return jsonify(roster), 200


# ═════════════════════════════════════════════════════════════════════════
# Attachments
# ═════════════════════════════════════════════════════════════════════════

@proposal_bp.route("/proposals/<int:proposal_id>/attachments", methods=["GET"])
def list_proposal_attachments(proposal_id):
    proposal_lifecycle.get_proposal(proposal_id)
    return jsonify(attachments.list_attachments("proposal", proposal_id)), 200


@proposal_bp.route("/proposals/<int:proposal_id>/attachments", methods=["POST"])
def add_proposal_attachment(proposal_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("reference"):
        return api_error(E.VALIDATION_REQUIRED, "reference is required")

    attachment = attachments.add_attachment(
        "proposal", proposal_id,
        kind=data.get("kind", "file"),
        reference=data["reference"],
        label=data.get("label"),
        actor_id=actor_id,
    )
    return jsonify(attachment), 201


@proposal_bp.route("/attachments/<int:attachment_id>", methods=["DELETE"])
def delete_attachment(attachment_id):
    actor_id, err = require_actor()
    if err:
        return err
    attachments.remove_attachment(attachment_id, actor_id=actor_id)
    return jsonify({"deleted": attachment_id}), 200

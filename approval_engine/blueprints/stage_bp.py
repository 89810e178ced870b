"""
Stage Blueprint: project stages, ordering and promotion.

Endpoints:
    GET    /api/v1/projects/<pid>/stages                       ordered stages
    POST   /api/v1/projects/<pid>/stages                       Body: { "name" }
    PATCH  /api/v1/stages/<sid>                                Body: { "name" }
    DELETE /api/v1/stages/<sid>                                empty, non-frozen only
    POST   /api/v1/projects/<pid>/stages/<sid>/reorder         Body: { "target_position" }
    GET    /api/v1/projects/<pid>/current-stage
    POST   /api/v1/projects/<pid>/promote
    GET    /api/v1/projects/<pid>/progress
    GET    /api/v1/stages/<sid>/completion
"""

import logging

from flask import Blueprint, jsonify, request

from approval_engine.blueprints import register_error_handlers, require_actor
from approval_engine.services import progress, stage_gate
from approval_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

stage_bp = Blueprint("stage", __name__, url_prefix="/api/v1")
register_error_handlers(stage_bp)


@stage_bp.route("/projects/<int:project_id>/stages", methods=["GET"])
def list_stages(project_id):
    return jsonify(stage_gate.list_stages(project_id)), 200


@stage_bp.route("/projects/<int:project_id>/stages", methods=["POST"])
def create_stage(project_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    return jsonify(stage_gate.create_stage(project_id, name, actor_id=actor_id)), 201


@stage_bp.route("/stages/<int:stage_id>", methods=["PATCH"])
def rename_stage(stage_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    return jsonify(stage_gate.rename_stage(stage_id, name, actor_id=actor_id)), 200


@stage_bp.route("/stages/<int:stage_id>", methods=["DELETE"])
def delete_stage(stage_id):
    actor_id, err = require_actor()
    if err:
        return err
    stage_gate.delete_stage(stage_id, actor_id=actor_id)
    return jsonify({"deleted": stage_id}), 200


@stage_bp.route("/projects/<int:project_id>/stages/<int:stage_id>/reorder", methods=["POST"])
def reorder_stage(project_id, stage_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    target = data.get("target_position")
    if target is None:
        return api_error(E.VALIDATION_REQUIRED, "target_position is required")
    stages = stage_gate.reorder(project_id, stage_id, target, actor_id=actor_id)
    return jsonify(stages), 200


@stage_bp.route("/projects/<int:project_id>/current-stage", methods=["GET"])
def current_stage(project_id):
    return jsonify({"stage": stage_gate.current_stage(project_id)}), 200


@stage_bp.route("/projects/<int:project_id>/promote", methods=["POST"])
def promote(project_id):
    actor_id, err = require_actor()
    if err:
        return err
    return jsonify({"stage": stage_gate.promote(project_id, actor_id=actor_id)}), 200


@stage_bp.route("/projects/<int:project_id>/progress", methods=["GET"])
def project_progress(project_id):
    return jsonify(progress.get_project_progress(project_id)), 200


@stage_bp.route("/stages/<int:stage_id>/completion", methods=["GET"])
def stage_completion(stage_id):
    counts = stage_gate.stage_completion(stage_id)
    counts["completion_rate"] = stage_gate.stage_completion_rate(stage_id)
    return jsonify(counts), 200

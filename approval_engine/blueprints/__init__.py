"""
Approval Workflow Engine
Blueprint registry and shared request helpers.

Layer contract:
    - Blueprint: parse + validate input, resolve the acting user, call the
      service, return JSON.
    - NO db.session writes here; services own transactions.
    - NO role checks here; services perform them.
"""

import logging

from flask import request

from approval_engine.core.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PermissionDenied,
    PreconditionError,
    StateViolationError,
    ValidationError,
    WorkflowError,
)
from approval_engine.models import db
from approval_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"


def current_actor_id() -> int | None:
    """Authenticated user id forwarded by the host application, or None."""
    raw = request.headers.get(ACTOR_HEADER, "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def require_actor():
    """Return (actor_id, None) or (None, 401 error response)."""
    actor_id = current_actor_id()
    if actor_id is None:
        return None, api_error(E.UNAUTHENTICATED, f"{ACTOR_HEADER} header is required", status=401)
    return actor_id, None


def paginate_args(default_limit=50, max_limit=200):
    """Parse limit/offset query params.  Returns (limit, offset)."""
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


# ── Error handlers ────────────────────────────────────────────────────────────

def _workflow_status(error: WorkflowError) -> int:
    if isinstance(error, PreconditionError):
        return 422
    if isinstance(error, (StateViolationError, ConcurrencyConflictError)):
        return 409
    return 400


def register_error_handlers(bp):
    """Attach one JSON handler per engine error family to *bp*."""

    @bp.errorhandler(WorkflowError)
    def _handle_workflow(error: WorkflowError):
        db.session.rollback()
        return api_error(error.code, str(error), status=_workflow_status(error), details=error.details)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(PermissionDenied)
    def _handle_forbidden(error: PermissionDenied):
        db.session.rollback()
        logger.warning("Permission denied: %s", error, extra={"actor_id": error.actor_id})
        return api_error(E.FORBIDDEN, str(error))

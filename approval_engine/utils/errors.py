"""Standardised API error responses.

Usage
-----
    from approval_engine.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Proposal not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")
    return api_error(E.INCOMPLETE_STAGE, "Stage incomplete", details={"blocking": [...]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Workflow error codes mirror ``WorkflowError.code`` on the exception
    classes in ``approval_engine.core.exceptions``.
    """

    # Validation – HTTP 400 (malformed) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Auth – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # State violations – HTTP 409
    STATE_VIOLATION = "ERR_STATE_VIOLATION"
    TERMINAL_STATE = "ERR_TERMINAL_STATE"
    WRONG_STATE = "ERR_WRONG_STATE"
    ALREADY_SENT = "ERR_ALREADY_SENT"
    IMMUTABLE_ROSTER = "ERR_IMMUTABLE_ROSTER"
    NOT_REVIEWABLE = "ERR_NOT_REVIEWABLE"
    CONCURRENCY_CONFLICT = "ERR_CONCURRENCY_CONFLICT"

    # Precondition failures – HTTP 422
    PRECONDITION = "ERR_PRECONDITION"
    EMPTY_ROSTER = "ERR_EMPTY_ROSTER"
    NO_CHANGES = "ERR_NO_CHANGES"
    FROZEN_POSITION = "ERR_FROZEN_POSITION"
    INCOMPLETE_STAGE = "ERR_INCOMPLETE_STAGE"
    NON_EMPTY_STAGE = "ERR_NON_EMPTY_STAGE"
    NOT_CURRENT_STAGE = "ERR_NOT_CURRENT_STAGE"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.STATE_VIOLATION: 409,
    E.TERMINAL_STATE: 409,
    E.WRONG_STATE: 409,
    E.ALREADY_SENT: 409,
    E.IMMUTABLE_ROSTER: 409,
    E.NOT_REVIEWABLE: 409,
    E.CONCURRENCY_CONFLICT: 409,
    E.PRECONDITION: 422,
    E.EMPTY_ROSTER: 422,
    E.NO_CHANGES: 422,
    E.FROZEN_POSITION: 422,
    E.INCOMPLETE_STAGE: 422,
    E.NON_EMPTY_STAGE: 422,
    E.NOT_CURRENT_STAGE: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (blocking proposals, offending ids, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status

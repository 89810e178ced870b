"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints register one handler
per family and render a consistent JSON body with ``api_error``.

Families:
    - StateViolationError (HTTP 409): the entity is in the wrong state for
      the requested transition.
    - PreconditionError (HTTP 422): the state is right but a precondition
      of the operation is not met.
    - ConcurrencyConflictError (HTTP 409): a concurrent writer won the race
      twice in a row; the caller may retry.
    - NotFoundError (404), ValidationError (422), PermissionDenied (403).

Usage:
    from approval_engine.core.exceptions import TerminalStateError, NotFoundError

    raise NotFoundError(resource="Proposal", resource_id=42)
    raise TerminalStateError("Approver already approved", details={"approver_id": 7})
"""


class WorkflowError(Exception):
    """Base class for approval workflow failures.

    Args:
        message: Human-readable explanation.
        details: Optional structured payload returned to API clients.
    """

    code = "ERR_WORKFLOW"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── State violations (409) ───────────────────────────────────────────────────


class StateViolationError(WorkflowError):
    code = "ERR_STATE_VIOLATION"


class TerminalStateError(StateViolationError):
    """The approver or proposal is already APPROVED and frozen."""

    code = "ERR_TERMINAL_STATE"


class WrongStateError(StateViolationError):
    code = "ERR_WRONG_STATE"


class AlreadySentError(StateViolationError):
    code = "ERR_ALREADY_SENT"


class ImmutableRosterError(StateViolationError):
    """Roster edits outside DRAFT, or removal of an approver with decisions."""

    code = "ERR_IMMUTABLE_ROSTER"


class NotReviewableError(StateViolationError):
    """Decisions can only be recorded while the proposal is UNDER_REVIEW."""

    code = "ERR_NOT_REVIEWABLE"


# ── Precondition failures (422) ──────────────────────────────────────────────


class PreconditionError(WorkflowError):
    code = "ERR_PRECONDITION"


class EmptyRosterError(PreconditionError):
    code = "ERR_EMPTY_ROSTER"


class NoChangesError(PreconditionError):
    """Resend attempted without editing content since the last send."""

    code = "ERR_NO_CHANGES"


class FrozenPositionError(PreconditionError):
    """Stages before the current pointer can neither move nor be displaced."""

    code = "ERR_FROZEN_POSITION"


class IncompleteStageError(PreconditionError):
    """Promotion blocked; ``details["blocking"]`` lists the open proposals."""

    code = "ERR_INCOMPLETE_STAGE"


class NonEmptyStageError(PreconditionError):
    code = "ERR_NON_EMPTY_STAGE"


class NotCurrentStageError(PreconditionError):
    code = "ERR_NOT_CURRENT_STAGE"


# ── Transient ────────────────────────────────────────────────────────────────


class ConcurrencyConflictError(WorkflowError):
    """A concurrent write invalidated the operation even after one retry."""

    code = "ERR_CONCURRENCY_CONFLICT"


# ── Platform errors ──────────────────────────────────────────────────────────


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model name (e.g. "Proposal", "Stage").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Input was well-formed but violated a business rule.

    Maps to HTTP 422.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDenied(Exception):
    """Raised when the actor lacks the role required for an action."""

    def __init__(self, actor_id: int | None, action: str, reason: str | None = None) -> None:
        msg = f"User {actor_id} does not have permission for '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.actor_id = actor_id
        self.action = action

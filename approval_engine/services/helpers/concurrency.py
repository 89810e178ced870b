"""
Row locking and optimistic-concurrency retry for engine mutations.

Every public mutating service function runs as one short transaction:
lock the rows it is about to change, check invariants, write, commit.
Project, Proposal and Approver carry a ``version_id_col`` so a lost race
surfaces at flush time as ``StaleDataError``.  ``retry_on_conflict`` rolls
back and re-runs the whole operation once with a fresh read; a second loss
becomes ``ConcurrencyConflictError``.

Usage:
    @retry_on_conflict
    def send(proposal_id, actor_id):
        proposal = get_for_update(Proposal, proposal_id)
        ...
"""

import functools
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from approval_engine.core.exceptions import ConcurrencyConflictError, NotFoundError
from approval_engine.models import db

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


def get_for_update(model, pk, *, label=None, include_deleted=False):
    """Load one row under ``SELECT … FOR UPDATE`` or raise NotFoundError.

    ``populate_existing`` forces a fresh read so a retried operation sees
    the state committed by the writer that beat it.  Soft-deleted rows are
    treated as missing unless ``include_deleted`` is set.
    """
    stmt = (
        select(model)
        .where(model.id == pk)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    if not include_deleted and getattr(obj, "deleted_at", None) is not None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def retry_on_conflict(func):
    """Retry a service operation once after a lost optimistic-lock race.

    ``IntegrityError`` is included because the partial unique index on
    APPROVED decisions is the storage-level backstop for the same race.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except (StaleDataError, IntegrityError) as exc:
                db.session.rollback()
                if attempt >= MAX_ATTEMPTS:
                    logger.warning(
                        "Concurrency conflict in %s after %d attempts",
                        func.__name__, attempt,
                    )
                    raise ConcurrencyConflictError(
                        f"Concurrent modification detected in {func.__name__}; please retry",
                        details={"operation": func.__name__},
                    ) from exc
                logger.info(
                    "Stale write in %s, retrying with a fresh read",
                    func.__name__,
                )

    return wrapper

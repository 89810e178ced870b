"""Shared utility functions for blueprints and services.

get_or_404:   tuple-return lookup used by read-only blueprint routes
utcnow:       timezone-aware "now"
as_aware:     normalise naive datetimes read back from SQLite to UTC
"""
import logging
from datetime import datetime, timezone

from flask import jsonify

from approval_engine.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Notification, nid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": "ERR_NOT_FOUND"}), 404)
    return obj, None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes; SQLite drops tzinfo on round-trip."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

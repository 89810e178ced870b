"""
Lifecycle event outbox: emit inside the transaction, dispatch after commit.

Every proposal, decision and stage transition calls ``emit`` before the
service commits, so an event exists iff its mutation committed.  After the
commit the service calls ``dispatch_pending``, which hands pending rows to
the configured router in id order.  A router failure is logged, the row is
marked ``failed`` and it is not retried by the engine.

Router contract:
    class MyRouter:
        def route(self, event: LifecycleEvent) -> None: ...

The router is resolved from ``current_app.extensions["approval_router"]``;
when none is configured the rows stay ``pending`` for an external relay.
"""

import json
import logging

from flask import current_app, has_app_context
from sqlalchemy import select

from approval_engine.core.exceptions import ValidationError
from approval_engine.models import db
from approval_engine.models.lifecycle_event import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    ENTITY_TYPES,
    EVENT_TYPES,
    LifecycleEvent,
)
from approval_engine.utils.helpers import utcnow

logger = logging.getLogger(__name__)

ROUTER_EXTENSION_KEY = "approval_router"


def emit(
    event_type: str,
    *,
    entity_type: str,
    entity_id: int,
    project_id: int | None,
    actor_id: int | None,
    payload: dict | None = None,
) -> LifecycleEvent:
    """
    Append one outbox row.  Uses ``flush`` so callers keep
    transaction control.
    """
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown event type: {event_type}")
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type: {entity_type}")

    event = LifecycleEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        project_id=project_id,
        actor_id=actor_id,
        payload_json=json.dumps(payload or {}, default=str),
        occurred_at=utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    logger.debug(
        "Lifecycle event queued",
        extra={"event_type": event_type, "project_id": project_id, "actor_id": actor_id},
    )
    return event


def get_router():
    if not has_app_context():
        return None
    return current_app.extensions.get(ROUTER_EXTENSION_KEY)


def set_router(app, router) -> None:
    """Install (or clear, with ``None``) the router for *app*."""
    app.extensions[ROUTER_EXTENSION_KEY] = router


def dispatch_pending(router=None) -> dict:
    """
    Deliver every pending outbox row to *router* in commit order.

    Commits after each event so one failure cannot undo the delivery
    bookkeeping of its predecessors.

    Returns:
        {"delivered": int, "failed": int}
    """
    router = router or get_router()
    result = {"delivered": 0, "failed": 0}
    if router is None:
        return result

    event_ids = db.session.execute(
        select(LifecycleEvent.id)
        .where(LifecycleEvent.delivery_state == DELIVERY_PENDING)
        .order_by(LifecycleEvent.id)
    ).scalars().all()

    for event_id in event_ids:
        event = db.session.get(LifecycleEvent, event_id)
        if event is None or event.delivery_state != DELIVERY_PENDING:
            continue
        try:
            router.route(event)
        except Exception as exc:
            db.session.rollback()
            logger.exception(
                "Lifecycle event delivery failed",
                extra={"event_id": event_id, "project_id": event.project_id},
            )
            event = db.session.get(LifecycleEvent, event_id)
            event.delivery_state = DELIVERY_FAILED
            event.last_error = str(exc)[:2000]
            result["failed"] += 1
        else:
            event.delivery_state = DELIVERY_DELIVERED
            event.delivered_at = utcnow()
            result["delivered"] += 1
        db.session.commit()

    return result


def list_events(
    *,
    project_id: int | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    event_type: str | None = None,
    delivery_state: str | None = None,
    limit: int = 100,
) -> list[LifecycleEvent]:
    """Outbox rows in emission order, optionally filtered."""
    stmt = select(LifecycleEvent)
    if project_id is not None:
        stmt = stmt.where(LifecycleEvent.project_id == project_id)
    if entity_type:
        stmt = stmt.where(LifecycleEvent.entity_type == entity_type)
    if entity_id is not None:
        stmt = stmt.where(LifecycleEvent.entity_id == entity_id)
    if event_type:
        stmt = stmt.where(LifecycleEvent.event_type == event_type)
    if delivery_state:
        stmt = stmt.where(LifecycleEvent.delivery_state == delivery_state)
    stmt = stmt.order_by(LifecycleEvent.id).limit(limit)
    return db.session.execute(stmt).scalars().all()

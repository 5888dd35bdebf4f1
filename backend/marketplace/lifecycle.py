# Order status lifecycle

# Each order kind has a fixed path through the statuses. Every status change
# goes through transition(), which applies it as a single UPDATE guarded by the
# status the caller saw, so two writers can never both win.

import logging
from typing import Dict, Set

from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session

from marketplace.db_models import OrderKind, OrderStatus, TrackingEvent, utcnow
from marketplace.database import get_order, order_model
from marketplace.errors import InvalidTransition, ConflictError

logger = logging.getLogger(__name__)

S = OrderStatus

FLOWS = {
    OrderKind.regular.value: [
        S.pending, S.processing, S.ready_for_pickup, S.assigned, S.picked_up,
        S.en_route, S.delivered_to_psm, S.delivered, S.completed,
    ],
    OrderKind.grocery.value: [
        S.pending, S.processing, S.ready_for_pickup, S.assigned, S.picked_up,
        S.en_route, S.delivered, S.completed,
    ],
    OrderKind.manual.value: [
        S.pending, S.ready_for_pickup, S.delivered, S.completed,
    ],
}

TERMINAL = {S.completed.value, S.cancelled.value}

# Column stamped when an order enters a status
TIMESTAMP_FIELDS = {
    S.processing.value: "processing_at",
    S.ready_for_pickup.value: "ready_at",
    S.assigned.value: "assigned_at",
    S.picked_up.value: "picked_up_at",
    S.en_route.value: "en_route_at",
    S.delivered_to_psm.value: "deposited_at",
    S.delivered.value: "delivered_at",
    S.completed.value: "completed_at",
    S.cancelled.value: "cancelled_at",
}


def _build_transitions(flow) -> Dict[str, Set[str]]:
    table = {}
    for current, following in zip(flow, flow[1:]):
        table[current.value] = {following.value}
    for state in table:
        table[state].add(S.cancelled.value)
    table[S.completed.value] = set()
    table[S.cancelled.value] = set()
    return table


TRANSITIONS = {kind: _build_transitions(flow) for kind, flow in FLOWS.items()}

# Statuses during which a delivery agent is holding the order
AGENT_HELD = {S.assigned.value, S.picked_up.value, S.en_route.value}


def allowed_next(kind: str, current: str) -> Set[str]:
    return TRANSITIONS[kind].get(current, set())


def can_transition(kind: str, current: str, target: str) -> bool:
    return target in allowed_next(kind, current)


def record_event(session: Session, kind: str, order_id: int, status: str, note: str = None,
                 agent_id: int = None, actor_user_id: int = None, lat: float = None, lng: float = None):
    session.add(TrackingEvent(
        order_kind=kind,
        order_id=order_id,
        status=status,
        note=note,
        agent_id=agent_id,
        actor_user_id=actor_user_id,
        lat=lat,
        lng=lng,
    ))


def transition(session: Session, kind: str, order_id: int, target: str, *,
               actor_user_id: int = None, note: str = None, guard: dict = None, values: dict = None):
    """Move an order to `target`.

    `guard` adds column conditions to the UPDATE (e.g. agent_id IS NULL) and
    `values` extra columns to set in the same statement. Raises
    InvalidTransition when the move is not on the order's path and
    ConflictError when the row changed under us.
    """
    target = S(target).value
    order = get_order(session, kind, order_id)
    current = order.status

    if not can_transition(kind, current, target):
        raise InvalidTransition(f"Cannot move {kind} order from '{current}' to '{target}'")

    model = order_model(kind)
    now = utcnow()
    new_values = {"status": target, "updated_at": now}
    if target in TIMESTAMP_FIELDS:
        new_values[TIMESTAMP_FIELDS[target]] = now
    if values:
        new_values.update(values)

    conditions = [model.id == order_id, model.status == current]
    for column, expected in (guard or {}).items():
        attr = getattr(model, column)
        conditions.append(attr.is_(None) if expected is None else attr == expected)

    result = session.exec(
        update(model).where(*conditions).values(**new_values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError("Order was updated by someone else, reload and retry")

    # Row already written above; refresh the loaded copy without marking it dirty
    for column, value in new_values.items():
        set_committed_value(order, column, value)

    record_event(session, kind, order_id, target, note=note, agent_id=order.agent_id, actor_user_id=actor_user_id)
    logger.info("%s order %s: %s -> %s", kind, order_id, current, target)
    return order

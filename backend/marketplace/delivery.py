# Agent assignment and the handovers between seller, agent, pickup site and buyer

import logging
from typing import Optional

from fastapi import BackgroundTasks
from sqlalchemy import update, func
from sqlmodel import Session, select, col

from marketplace.auth import send_handover_code_email
from marketplace.config import MAX_ACTIVE_ORDERS_PER_AGENT, CURRENCY
from marketplace.database import get_agent, get_order, get_order_items, get_user, get_pickup_site, order_model
from marketplace.db_models import (
    Agent,
    PickupSite,
    ConfirmationCode,
    CodeStatus,
    AgentType,
    AgentStatus,
    ApprovalState,
    ApprovalType,
    CodeType,
    OrderKind,
    OrderStatus,
    utcnow,
)
from marketplace.errors import (
    AlreadyAssigned,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    ValidationFailed,
)
from marketplace.handover import issue_code, consume_code, active_code
from marketplace.lifecycle import transition, record_event, AGENT_HELD
from marketplace.notifications import notify
from marketplace.payouts import (
    calculate_commissions,
    manual_order_commission,
    request_approval,
    list_approvals,
)

logger = logging.getLogger(__name__)

# Agent sub-type that carries each order kind
CARRIER_TYPE = {
    OrderKind.regular.value: AgentType.pickup_delivery.value,
    OrderKind.grocery.value: AgentType.fast_delivery.value,
}


# -----------------------------------------------------------------
# Agent bookkeeping
# -----------------------------------------------------------------

def active_order_count(session: Session, agent_id: int) -> int:
    total = 0
    for kind in CARRIER_TYPE:
        model = order_model(kind)
        statement = select(func.count()).select_from(model).where(
            model.agent_id == agent_id, col(model.status).in_(AGENT_HELD)
        )
        total += session.exec(statement).one()
    return total


def refresh_agent_status(session: Session, agent_id: int):
    """'active' while the agent holds orders, back to 'available' when it holds none."""
    agent = session.get(Agent, agent_id)
    if agent is None or agent.status == AgentStatus.offline.value:
        return
    busy = active_order_count(session, agent_id) > 0
    agent.status = AgentStatus.active.value if busy else AgentStatus.available.value
    session.add(agent)


def set_agent_status(session: Session, agent: Agent, status: str) -> Agent:
    agent = get_agent(session, agent.id)
    if status == AgentStatus.offline.value and active_order_count(session, agent.id) > 0:
        raise ConflictError("Finish or hand back your active orders before going offline")
    agent.status = status
    session.add(agent)
    session.flush()
    if status != AgentStatus.offline.value:
        refresh_agent_status(session, agent.id)
    return agent


def update_location(session: Session, agent: Agent, lat: float, lng: float) -> Agent:
    agent = get_agent(session, agent.id)
    agent.current_lat = lat
    agent.current_lng = lng
    agent.location_updated_at = utcnow()
    session.add(agent)

    # Every order the agent is carrying gets a breadcrumb
    for kind, order in held_orders(session, agent.id):
        record_event(session, kind, order.id, order.status, note="Location update",
                     agent_id=agent.id, actor_user_id=agent.user_id, lat=lat, lng=lng)
    return agent


def held_orders(session: Session, agent_id: int) -> list:
    rows = []
    for kind in CARRIER_TYPE:
        model = order_model(kind)
        statement = select(model).where(model.agent_id == agent_id, col(model.status).in_(AGENT_HELD))
        rows.extend((kind, order) for order in session.exec(statement.order_by(model.assigned_at)).all())
    return rows


def claimable_orders(session: Session, agent: Agent) -> list:
    kinds = [kind for kind, carrier in CARRIER_TYPE.items() if carrier == agent.agent_type]
    rows = []
    for kind in kinds:
        model = order_model(kind)
        statement = select(model).where(
            model.status == OrderStatus.ready_for_pickup.value,
            col(model.agent_id).is_(None),
        )
        rows.extend((kind, order) for order in session.exec(statement.order_by(model.ready_at)).all())
    return rows


def earnings(session: Session, agent: Agent) -> dict:
    approvals = list_approvals(session, beneficiary_user_id=agent.user_id)
    totals = {state.value: 0.0 for state in ApprovalState}
    for approval in approvals:
        totals[approval.status] = round(totals[approval.status] + approval.amount, 2)
    return {
        "agent_id": agent.id,
        "currency": CURRENCY,
        "pending": totals[ApprovalState.pending.value],
        "approved": totals[ApprovalState.approved.value],
        "rejected": totals[ApprovalState.rejected.value],
        "approvals": approvals,
    }


# -----------------------------------------------------------------
# Assignment
# -----------------------------------------------------------------

def accept_order(session: Session, kind: str, order_id: int, agent: Agent, actor_user_id: int = None):
    """Claim an order for an agent.

    Exactly one agent can win: the claim is a single UPDATE that only matches
    while the order is unassigned and ready for pickup.
    """
    if kind not in CARRIER_TYPE:
        raise ValidationFailed(f"{kind} orders are not delivered by agents")

    agent = get_agent(session, agent.id)
    if agent.approval_status != ApprovalState.approved.value:
        raise PermissionDenied("Agent is not approved")
    if agent.agent_type != CARRIER_TYPE[kind]:
        raise PermissionDenied(f"{agent.agent_type} agents cannot carry {kind} orders")
    if agent.status == AgentStatus.offline.value:
        raise ValidationFailed("Go online before accepting orders")

    # Write to the agent row before counting: concurrent accepts by the same
    # agent queue up here, so each one counts the orders the others claimed
    session.exec(
        update(Agent)
        .where(Agent.id == agent.id)
        .values(status=Agent.status)
        .execution_options(synchronize_session=False)
    )
    if active_order_count(session, agent.id) >= MAX_ACTIVE_ORDERS_PER_AGENT:
        raise ValidationFailed(f"You already hold {MAX_ACTIVE_ORDERS_PER_AGENT} active orders")

    order = get_order(session, kind, order_id)
    if order.agent_id is not None:
        raise AlreadyAssigned()
    if order.status != OrderStatus.ready_for_pickup.value:
        raise ConflictError(f"Order is {order.status}, not ready for pickup")

    try:
        order = transition(
            session, kind, order_id, OrderStatus.assigned.value,
            actor_user_id=actor_user_id or agent.user_id,
            note=f"Accepted by agent {agent.id}",
            guard={"agent_id": None},
            values={"agent_id": agent.id},
        )
    except ConflictError:
        raise AlreadyAssigned()

    agent.status = AgentStatus.active.value
    session.add(agent)

    notify(session, order.user_id, "order_assigned", "Agent assigned",
           f"An agent is on the way to collect order {order.order_number}", kind, order_id)
    notify(session, order.seller_id, "order_assigned", "Agent assigned",
           f"Order {order.order_number} will be collected soon", kind, order_id)
    logger.info("Agent %s accepted %s order %s", agent.id, kind, order_id)
    return order


def _require_holder(order, agent: Agent):
    if order.agent_id != agent.id:
        raise NotFoundError("Order not found")


# -----------------------------------------------------------------
# Seller -> agent
# -----------------------------------------------------------------

def issue_pickup_code(session: Session, kind: str, order_id: int, agent: Agent):
    order = get_order(session, kind, order_id)
    _require_holder(order, agent)
    if order.status != OrderStatus.assigned.value:
        raise ConflictError(f"Order is {order.status}, pickup codes are issued while assigned")
    return issue_code(session, kind, order_id, CodeType.seller_pickup.value, agent.user_id)


def verify_pickup(session: Session, kind: str, order_id: int, seller_id: int, code: str):
    """Seller enters the agent's code: goods have left the shop."""
    order = get_order(session, kind, order_id)
    if getattr(order, "seller_id", None) != seller_id:
        raise NotFoundError("Order not found")
    if order.status != OrderStatus.assigned.value:
        raise ConflictError(f"Order is {order.status}, not waiting for pickup")

    consume_code(session, kind, order_id, CodeType.seller_pickup.value, code)
    order = transition(session, kind, order_id, OrderStatus.picked_up.value, actor_user_id=seller_id,
                       note="Seller confirmed handover")

    breakdown = calculate_commissions(order.total_amount)
    request_approval(session, kind, order, ApprovalType.seller_payout.value, breakdown.seller_payout,
                     beneficiary_user_id=order.seller_id, requested_by=seller_id)

    notify(session, order.user_id, "order_picked_up", "Order picked up",
           f"Order {order.order_number} has been picked up", kind, order_id)
    notify(session, get_agent(session, order.agent_id).user_id, "pickup_confirmed", "Pickup confirmed",
           f"Seller confirmed pickup of {order.order_number}", kind, order_id)
    return order


def start_route(session: Session, kind: str, order_id: int, agent: Agent):
    order = get_order(session, kind, order_id)
    _require_holder(order, agent)
    return transition(session, kind, order_id, OrderStatus.en_route.value, actor_user_id=agent.user_id)


def _ensure_en_route(session: Session, kind: str, order, agent: Agent):
    _require_holder(order, agent)
    if order.status == OrderStatus.picked_up.value:
        return transition(session, kind, order.id, OrderStatus.en_route.value, actor_user_id=agent.user_id)
    if order.status != OrderStatus.en_route.value:
        raise ConflictError(f"Order is {order.status}, pick it up first")
    return order


# -----------------------------------------------------------------
# Agent -> buyer (groceries)
# -----------------------------------------------------------------

def request_delivery_code(session: Session, order_id: int, agent: Agent,
                          background_tasks: Optional[BackgroundTasks] = None):
    """Generate the buyer's delivery code. Only the buyer ever sees it."""
    kind = OrderKind.grocery.value
    order = _ensure_en_route(session, kind, get_order(session, kind, order_id), agent)

    buyer = get_user(session, order.user_id)
    code = issue_code(session, kind, order_id, CodeType.buyer_delivery.value, buyer.id)

    notify(session, buyer.id, "delivery_code", "Your delivery code",
           f"Give code {code.code_value} to the agent when you receive order {order.order_number}", kind, order_id)
    send_handover_code_email(buyer.email, order.order_number, code.code_value, "delivery", background_tasks)
    return code


def confirm_delivery(session: Session, order_id: int, agent: Agent, code: str):
    """Agent enters the code the buyer read out: goods are at the buyer."""
    kind = OrderKind.grocery.value
    order = get_order(session, kind, order_id)
    _require_holder(order, agent)
    if order.status != OrderStatus.en_route.value:
        raise ConflictError(f"Order is {order.status}, not out for delivery")

    consume_code(session, kind, order_id, CodeType.buyer_delivery.value, code)
    order = transition(session, kind, order_id, OrderStatus.delivered.value, actor_user_id=agent.user_id,
                       note="Buyer confirmed delivery")

    breakdown = calculate_commissions(order.total_amount, agent.agent_type, agent.commission_rate)
    request_approval(session, kind, order, ApprovalType.fda_commission.value, breakdown.delivery_commission,
                     beneficiary_user_id=agent.user_id, requested_by=agent.user_id)

    refresh_agent_status(session, agent.id)
    notify(session, order.user_id, "order_delivered", "Order delivered",
           f"Order {order.order_number} was delivered", kind, order_id)
    notify(session, order.seller_id, "order_delivered", "Order delivered",
           f"Order {order.order_number} reached the buyer", kind, order_id)
    return order


# -----------------------------------------------------------------
# Agent -> pickup site -> buyer (physical goods)
# -----------------------------------------------------------------

def _site_manager_for(order, manager: Agent):
    if manager.pickup_site_id is None or manager.pickup_site_id != order.pickup_site_id:
        raise NotFoundError("Order not found")


def issue_deposit_code(session: Session, order_id: int, agent: Agent):
    kind = OrderKind.regular.value
    _ensure_en_route(session, kind, get_order(session, kind, order_id), agent)
    return issue_code(session, kind, order_id, CodeType.psm_deposit.value, agent.user_id)


def confirm_deposit(session: Session, order_id: int, manager: Agent, code: str,
                    background_tasks: Optional[BackgroundTasks] = None):
    """PSM enters the agent's code: the parcel is now at the pickup site."""
    kind = OrderKind.regular.value
    order = get_order(session, kind, order_id)
    _site_manager_for(order, manager)
    if order.status != OrderStatus.en_route.value:
        raise ConflictError(f"Order is {order.status}, not on its way to the site")

    consume_code(session, kind, order_id, CodeType.psm_deposit.value, code)
    order = transition(session, kind, order_id, OrderStatus.delivered_to_psm.value,
                       actor_user_id=manager.user_id, note="Deposited at pickup site",
                       values={"psm_agent_id": manager.id})
    adjust_site_load(session, order.pickup_site_id, +1)

    buyer = get_user(session, order.user_id)
    collection = issue_code(session, kind, order_id, CodeType.buyer_collection.value, buyer.id)
    notify(session, buyer.id, "ready_for_collection", "Ready for collection",
           f"Order {order.order_number} is at the pickup site. Your collection code is {collection.code_value}",
           kind, order_id)
    send_handover_code_email(buyer.email, order.order_number, collection.code_value, "collection", background_tasks)

    carrier = get_agent(session, order.agent_id)
    refresh_agent_status(session, carrier.id)
    notify(session, carrier.user_id, "deposit_confirmed", "Deposit confirmed",
           f"Pickup site received {order.order_number}", kind, order_id)
    return order


def confirm_collection(session: Session, kind: str, order_id: int, manager: Agent, code: str):
    """PSM enters the buyer's collection code: the buyer has the goods."""
    if kind not in (OrderKind.regular.value, OrderKind.manual.value):
        raise ValidationFailed(f"{kind} orders are not collected at pickup sites")

    order = get_order(session, kind, order_id)
    _site_manager_for(order, manager)
    expected = OrderStatus.delivered_to_psm.value if kind == OrderKind.regular.value else OrderStatus.ready_for_pickup.value
    if order.status != expected:
        raise ConflictError(f"Order is {order.status}, not waiting for collection")

    consume_code(session, kind, order_id, CodeType.buyer_collection.value, code)
    order = transition(session, kind, order_id, OrderStatus.delivered.value, actor_user_id=manager.user_id,
                       note="Collected by buyer")

    if kind == OrderKind.regular.value:
        adjust_site_load(session, order.pickup_site_id, -1)
        carrier = get_agent(session, order.agent_id)
        psm = get_agent(session, order.psm_agent_id or manager.id)
        breakdown = calculate_commissions(
            order.total_amount, carrier.agent_type, carrier.commission_rate,
            with_site_manager=True, site_manager_rate=psm.commission_rate,
        )
        request_approval(session, kind, order, ApprovalType.pda_commission.value, breakdown.delivery_commission,
                         beneficiary_user_id=carrier.user_id, requested_by=manager.user_id)
        request_approval(session, kind, order, ApprovalType.psm_commission.value, breakdown.site_manager_commission,
                         beneficiary_user_id=psm.user_id, requested_by=manager.user_id)
        notify(session, order.user_id, "order_delivered", "Order collected",
               f"You collected order {order.order_number}", kind, order_id)
    else:
        amount = manual_order_commission(order.subtotal)
        request_approval(session, kind, order, ApprovalType.psm_commission.value, amount,
                         beneficiary_user_id=manager.user_id, requested_by=manager.user_id)
    return order


def adjust_site_load(session: Session, site_id: Optional[int], delta: int):
    if site_id is None:
        return
    session.exec(
        update(PickupSite)
        .where(PickupSite.id == site_id, PickupSite.current_load + delta >= 0)
        .values(current_load=PickupSite.current_load + delta)
        .execution_options(synchronize_session=False)
    )


# -----------------------------------------------------------------
# Manual orders at the pickup site
# -----------------------------------------------------------------

def mark_manual_ready(session: Session, order_id: int, manager: Agent):
    """Goods are on the shelf; the walk-in buyer gets a collection code on the receipt."""
    kind = OrderKind.manual.value
    order = get_order(session, kind, order_id)
    if order.created_by_agent_id != manager.id:
        raise NotFoundError("Order not found")
    order = transition(session, kind, order_id, OrderStatus.ready_for_pickup.value, actor_user_id=manager.user_id)
    code = issue_code(session, kind, order_id, CodeType.buyer_collection.value, manager.user_id)
    return order, code


def manual_receipt(session: Session, order_id: int, manager: Agent) -> dict:
    kind = OrderKind.manual.value
    order = get_order(session, kind, order_id)
    if order.pickup_site_id != manager.pickup_site_id:
        raise NotFoundError("Order not found")
    code = active_code(session, kind, order_id, CodeType.buyer_collection.value)
    return {
        "order": order,
        "items": get_order_items(session, kind, order_id),
        "pickup_site": get_pickup_site(session, order.pickup_site_id) if order.pickup_site_id else None,
        "collection_code": code.code_value if code else None,
        "collection_code_expires_at": code.expires_at if code else None,
        "currency": CURRENCY,
    }


def site_orders(session: Session, manager: Agent, status: str = None) -> list:
    rows = []
    for kind in (OrderKind.regular.value, OrderKind.manual.value):
        model = order_model(kind)
        statement = select(model).where(model.pickup_site_id == manager.pickup_site_id)
        if status:
            statement = statement.where(model.status == status)
        rows.extend((kind, order) for order in session.exec(statement.order_by(col(model.created_at).desc())).all())
    return rows


def held_codes(session: Session, user_id: int) -> list:
    """Active codes this user is meant to show to someone."""
    statement = select(ConfirmationCode).where(
        ConfirmationCode.holder_user_id == user_id,
        ConfirmationCode.status == CodeStatus.active.value,
        ConfirmationCode.expires_at > utcnow(),
    )
    return list(session.exec(statement.order_by(ConfirmationCode.created_at)).all())

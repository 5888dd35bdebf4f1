# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Delivery Agent Endpoints (FDA / PDA) ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends

from marketplace.database import new_session, get_user
from marketplace.db_models import Agent, OrderKind
from marketplace.delivery import (
    active_order_count,
    claimable_orders,
    held_orders,
    held_codes,
    accept_order,
    issue_pickup_code,
    start_route,
    request_delivery_code,
    confirm_delivery,
    issue_deposit_code,
    set_agent_status,
    update_location,
    earnings,
)
from marketplace.dependencies import (
    get_current_agent,
    get_delivery_agent,
    get_fast_delivery_agent,
    get_pickup_delivery_agent,
)
from marketplace.errors import NotFoundError
from marketplace.schemas import (
    AgentProfile,
    AgentRead,
    UserRead,
    AgentStatusUpdate,
    LocationUpdate,
    OrderRead,
    CodeIssued,
    CodeSubmit,
    HeldCode,
    EarningsSummary,
    ApprovalRead,
)

router = APIRouter(prefix="/api/agent", tags=["Agent"])

CARRIED_KINDS = (OrderKind.regular.value, OrderKind.grocery.value)


def _carried(kind: str) -> str:
    if kind not in CARRIED_KINDS:
        raise NotFoundError("Order not found")
    return kind


# Profile (any approved agent, including site managers)
@router.get("/profile", response_model=AgentProfile)
def my_profile(agent: Agent = Depends(get_current_agent)):
    with new_session() as session:
        return AgentProfile(
            user=UserRead.model_validate(get_user(session, agent.user_id)),
            agent=AgentRead.model_validate(agent),
            active_orders=active_order_count(session, agent.id),
        )


@router.put("/status", response_model=AgentRead)
def change_status(req: AgentStatusUpdate, agent: Agent = Depends(get_current_agent)):
    with new_session() as session:
        agent = set_agent_status(session, agent, req.status)
        session.commit()
        return AgentRead.model_validate(agent)


@router.put("/location", response_model=AgentRead)
def report_location(req: LocationUpdate, agent: Agent = Depends(get_delivery_agent)):
    with new_session() as session:
        agent = update_location(session, agent, req.lat, req.lng)
        session.commit()
        return AgentRead.model_validate(agent)


@router.get("/earnings", response_model=EarningsSummary)
def my_earnings(agent: Agent = Depends(get_current_agent)):
    with new_session() as session:
        data = earnings(session, agent)
        data["approvals"] = [ApprovalRead.model_validate(a) for a in data["approvals"]]
        return EarningsSummary(**data)


@router.get("/codes", response_model=List[HeldCode])
def my_codes(agent: Agent = Depends(get_current_agent)):
    with new_session() as session:
        return [HeldCode.model_validate(c) for c in held_codes(session, agent.user_id)]

# -------------------------------------------------------------------------------------------------------------------------------------------------
# Orders
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.get("/orders/available", response_model=List[OrderRead])
def available_orders(agent: Agent = Depends(get_delivery_agent)):
    with new_session() as session:
        return [OrderRead.of(kind, order) for kind, order in claimable_orders(session, agent)]


@router.get("/orders/mine", response_model=List[OrderRead])
def my_orders(agent: Agent = Depends(get_delivery_agent)):
    with new_session() as session:
        return [OrderRead.of(kind, order) for kind, order in held_orders(session, agent.id)]


@router.post("/orders/{kind}/{order_id}/accept", response_model=OrderRead)
def accept(kind: str, order_id: int, agent: Agent = Depends(get_delivery_agent)):
    with new_session() as session:
        order = accept_order(session, _carried(kind), order_id, agent)
        session.commit()
        return OrderRead.of(kind, order)


# Agent shows this code to the seller at the shop
@router.post("/orders/{kind}/{order_id}/pickup-code", response_model=CodeIssued)
def pickup_code(kind: str, order_id: int, agent: Agent = Depends(get_delivery_agent)):
    with new_session() as session:
        code = issue_pickup_code(session, _carried(kind), order_id, agent)
        session.commit()
        return CodeIssued(code_type=code.code_type, code=code.code_value, expires_at=code.expires_at,
                          detail="Show this code to the seller")


@router.post("/orders/{kind}/{order_id}/en-route", response_model=OrderRead)
def en_route(kind: str, order_id: int, agent: Agent = Depends(get_delivery_agent)):
    with new_session() as session:
        order = start_route(session, _carried(kind), order_id, agent)
        session.commit()
        return OrderRead.of(kind, order)


# Grocery: code goes to the buyer only, the agent never sees it
@router.post("/orders/grocery/{order_id}/delivery-code", response_model=CodeIssued)
def delivery_code(order_id: int, background_tasks: BackgroundTasks,
                  agent: Agent = Depends(get_fast_delivery_agent)):
    with new_session() as session:
        code = request_delivery_code(session, order_id, agent, background_tasks)
        session.commit()
        return CodeIssued(code_type=code.code_type, expires_at=code.expires_at,
                          detail="Delivery code sent to the buyer")


@router.post("/orders/grocery/{order_id}/confirm-delivery", response_model=OrderRead)
def delivery_confirmation(order_id: int, req: CodeSubmit, agent: Agent = Depends(get_fast_delivery_agent)):
    with new_session() as session:
        order = confirm_delivery(session, order_id, agent, req.code)
        session.commit()
        return OrderRead.of(OrderKind.grocery.value, order)


# Physical goods: agent shows this code to the pickup site manager
@router.post("/orders/regular/{order_id}/deposit-code", response_model=CodeIssued)
def deposit_code(order_id: int, agent: Agent = Depends(get_pickup_delivery_agent)):
    with new_session() as session:
        code = issue_deposit_code(session, order_id, agent)
        session.commit()
        return CodeIssued(code_type=code.code_type, code=code.code_value, expires_at=code.expires_at,
                          detail="Show this code to the pickup site manager")

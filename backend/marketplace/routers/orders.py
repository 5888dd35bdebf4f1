# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Order views shared by every party of an order ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from fastapi import APIRouter, Depends

from marketplace.database import new_session, get_order_items, get_tracking, get_agent
from marketplace.db_models import User
from marketplace.dependencies import get_current_user
from marketplace.orders import get_visible_order, order_contacts
from marketplace.schemas import (
    ContactLink,
    OrderDetail,
    OrderRead,
    OrderItemRead,
    OrderKindName,
    TrackingRead,
    TrackingEventRead,
    AgentLocation,
)

router = APIRouter(prefix="/api/orders", tags=["Orders"])


@router.get("/{kind}/{order_id}", response_model=OrderDetail)
def order_detail(kind: OrderKindName, order_id: int, user: User = Depends(get_current_user)):
    with new_session() as session:
        order = get_visible_order(session, user, kind, order_id)
        return OrderDetail(
            order=OrderRead.of(kind, order),
            items=[OrderItemRead.model_validate(i) for i in get_order_items(session, kind, order_id)],
            tracking=[TrackingEventRead.model_validate(e) for e in get_tracking(session, kind, order_id)],
            contacts=[ContactLink(**c) for c in order_contacts(session, kind, order, user)],
        )


@router.get("/{kind}/{order_id}/tracking", response_model=TrackingRead)
def order_tracking(kind: OrderKindName, order_id: int, user: User = Depends(get_current_user)):
    with new_session() as session:
        order = get_visible_order(session, user, kind, order_id)

        location = None
        if order.agent_id is not None:
            agent = get_agent(session, order.agent_id)
            location = AgentLocation(agent_id=agent.id, lat=agent.current_lat, lng=agent.current_lng,
                                     updated_at=agent.location_updated_at)

        return TrackingRead(
            order=OrderRead.of(kind, order),
            events=[TrackingEventRead.model_validate(e) for e in get_tracking(session, kind, order_id)],
            agent_location=location,
        )

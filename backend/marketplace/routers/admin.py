# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Admin Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

# Every route here sits behind the admin role check on the router itself.

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from marketplace.database import (
    new_session,
    list_agents,
    get_agent,
    review_agent,
    set_user_active,
    list_orders,
    problematic_orders,
    add_pickup_site,
    list_pickup_sites,
    add_promotion,
    get_promotion,
    list_promotions,
)
from marketplace.db_models import User, OrderKind
from marketplace.delivery import accept_order
from marketplace.dependencies import get_current_admin
from marketplace.orders import cancel_order, reassign_owner, list_payment_proofs, review_payment_proof
from marketplace.payouts import list_approvals, approve, reject, check_commission_rate
from marketplace.schemas import (
    AgentRead,
    AgentReview,
    ApprovalRead,
    ReviewRequest,
    OrderRead,
    OrderKindName,
    CancelRequest,
    AssignAgentRequest,
    OwnerUpdate,
    ProblematicOrder,
    PickupSiteCreate,
    PickupSiteRead,
    PromotionCreate,
    PromotionUpdate,
    PromotionRead,
    PaymentProofRead,
    UserRead,
    UserStatusUpdate,
)

router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(get_current_admin)])

# -------------------------------------------------------------------------------------------------------------------------------------------------
# Agents
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.get("/agents", response_model=List[AgentRead])
def agents(approval_status: Optional[str] = None, agent_type: Optional[str] = None):
    with new_session() as session:
        return [AgentRead.model_validate(a) for a in list_agents(session, approval_status, agent_type)]


@router.post("/agents/{agent_id}/approve", response_model=AgentRead)
def approve_agent(agent_id: int, req: Optional[AgentReview] = None):
    req = req or AgentReview()
    with new_session() as session:
        if req.commission_rate is not None:
            check_commission_rate(get_agent(session, agent_id).agent_type, req.commission_rate)
        agent = review_agent(session, agent_id, True, pickup_site_id=req.pickup_site_id)
        if req.commission_rate is not None:
            agent.commission_rate = req.commission_rate
        session.commit()
        return AgentRead.model_validate(agent)


@router.post("/agents/{agent_id}/reject", response_model=AgentRead)
def reject_agent(agent_id: int, req: Optional[AgentReview] = None):
    with new_session() as session:
        agent = review_agent(session, agent_id, False, reason=req.reason if req else None)
        session.commit()
        return AgentRead.model_validate(agent)


@router.patch("/users/{user_id}/status", response_model=UserRead)
def change_user_status(user_id: int, req: UserStatusUpdate):
    with new_session() as session:
        user = set_user_active(session, user_id, req.is_active)
        session.commit()
        return UserRead.model_validate(user)

# -------------------------------------------------------------------------------------------------------------------------------------------------
# Payout approvals
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.get("/approvals", response_model=List[ApprovalRead])
def approvals(status: Optional[str] = "pending", approval_type: Optional[str] = None):
    with new_session() as session:
        return [ApprovalRead.model_validate(a) for a in list_approvals(session, status, approval_type)]


@router.post("/approvals/{approval_id}/approve", response_model=ApprovalRead)
def approve_payout(approval_id: int, req: Optional[ReviewRequest] = None,
                   admin: User = Depends(get_current_admin)):
    with new_session() as session:
        approval = approve(session, approval_id, admin.id, req.notes if req else None)
        session.commit()
        return ApprovalRead.model_validate(approval)


@router.post("/approvals/{approval_id}/reject", response_model=ApprovalRead)
def reject_payout(approval_id: int, req: Optional[ReviewRequest] = None,
                  admin: User = Depends(get_current_admin)):
    with new_session() as session:
        approval = reject(session, approval_id, admin.id, req.notes if req else None)
        session.commit()
        return ApprovalRead.model_validate(approval)

# -------------------------------------------------------------------------------------------------------------------------------------------------
# Orders
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.get("/orders", response_model=List[OrderRead])
def all_orders(kind: Optional[OrderKindName] = None, status: Optional[str] = None):
    kinds = [kind] if kind else [k.value for k in OrderKind]
    with new_session() as session:
        result = []
        for k in kinds:
            result.extend(OrderRead.of(k, o) for o in list_orders(session, k, status=status))
        return sorted(result, key=lambda o: o.created_at, reverse=True)


@router.get("/orders/problematic", response_model=List[ProblematicOrder])
def orders_with_bad_owner():
    with new_session() as session:
        return [ProblematicOrder(**row) for row in problematic_orders(session)]


@router.post("/orders/{kind}/{order_id}/assign-agent", response_model=OrderRead)
def assign_agent(kind: OrderKindName, order_id: int, req: AssignAgentRequest,
                 admin: User = Depends(get_current_admin)):
    with new_session() as session:
        agent = get_agent(session, req.agent_id)
        order = accept_order(session, kind, order_id, agent, actor_user_id=admin.id)
        session.commit()
        return OrderRead.of(kind, order)


@router.post("/orders/{kind}/{order_id}/cancel", response_model=OrderRead)
def cancel_any_order(kind: OrderKindName, order_id: int, req: Optional[CancelRequest] = None,
                     admin: User = Depends(get_current_admin)):
    with new_session() as session:
        order = cancel_order(session, kind, order_id, admin.id, req.reason if req else "Cancelled by admin")
        session.commit()
        return OrderRead.of(kind, order)


@router.patch("/orders/{kind}/{order_id}/owner", response_model=OrderRead)
def change_owner(kind: OrderKindName, order_id: int, req: OwnerUpdate):
    with new_session() as session:
        order = reassign_owner(session, kind, order_id, req.user_id)
        session.commit()
        return OrderRead.of(kind, order)

# -------------------------------------------------------------------------------------------------------------------------------------------------
# Payments
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.get("/payment-proofs", response_model=List[PaymentProofRead])
def payment_proofs(status: Optional[str] = "pending"):
    with new_session() as session:
        return [PaymentProofRead.model_validate(p) for p in list_payment_proofs(session, status)]


@router.post("/payment-proofs/{proof_id}/approve", response_model=PaymentProofRead)
def confirm_payment(proof_id: int, admin: User = Depends(get_current_admin)):
    with new_session() as session:
        proof = review_payment_proof(session, proof_id, admin, approve=True)
        session.commit()
        return PaymentProofRead.model_validate(proof)


@router.post("/payment-proofs/{proof_id}/reject", response_model=PaymentProofRead)
def refuse_payment(proof_id: int, admin: User = Depends(get_current_admin)):
    with new_session() as session:
        proof = review_payment_proof(session, proof_id, admin, approve=False)
        session.commit()
        return PaymentProofRead.model_validate(proof)

# -------------------------------------------------------------------------------------------------------------------------------------------------
# Pickup sites & promotions
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.post("/pickup-sites", response_model=PickupSiteRead, status_code=status.HTTP_201_CREATED)
def create_pickup_site(req: PickupSiteCreate):
    with new_session() as session:
        site = add_pickup_site(session, **req.model_dump())
        session.commit()
        return PickupSiteRead.model_validate(site)


@router.get("/pickup-sites", response_model=List[PickupSiteRead])
def pickup_sites():
    with new_session() as session:
        return [PickupSiteRead.model_validate(s) for s in list_pickup_sites(session, only_active=False)]


@router.post("/promotions", response_model=PromotionRead, status_code=status.HTTP_201_CREATED)
def create_promotion(req: PromotionCreate):
    with new_session() as session:
        promotion = add_promotion(session, **req.model_dump())
        session.commit()
        return PromotionRead.model_validate(promotion)


@router.get("/promotions", response_model=List[PromotionRead])
def promotions():
    with new_session() as session:
        return [PromotionRead.model_validate(p) for p in list_promotions(session)]


@router.put("/promotions/{promotion_id}", response_model=PromotionRead)
def edit_promotion(promotion_id: int, req: PromotionUpdate):
    with new_session() as session:
        promotion = get_promotion(session, promotion_id)
        for key, value in req.model_dump(exclude_unset=True).items():
            setattr(promotion, key, value)
        session.add(promotion)
        session.commit()
        return PromotionRead.model_validate(promotion)


@router.delete("/promotions/{promotion_id}", response_model=PromotionRead)
def deactivate_promotion(promotion_id: int):
    with new_session() as session:
        promotion = get_promotion(session, promotion_id)
        promotion.is_active = False
        session.add(promotion)
        session.commit()
        return PromotionRead.model_validate(promotion)

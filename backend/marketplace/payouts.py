# Commissions and admin payout approvals

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List

from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select, col

from marketplace.db_models import (
    AdminApproval,
    ApprovalState,
    ApprovalType,
    AgentType,
    OrderKind,
    OrderStatus,
    PayoutStatus,
    utcnow,
)
from marketplace.database import get_order, order_model
from marketplace.errors import ConflictError, NotFoundError, ValidationFailed
from marketplace.lifecycle import transition
from marketplace.notifications import notify

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------
# Commission Calculator
# -----------------------------------------------------------------

# Order totals include a 21% platform markup over the seller's price
PLATFORM_MARKUP = Decimal("0.21")

# Share of the platform profit (percent) per agent sub-type
DEFAULT_SHARES = {
    AgentType.fast_delivery.value: Decimal("50"),
    AgentType.pickup_delivery.value: Decimal("70"),
    AgentType.pickup_site_manager.value: Decimal("15"),
}

# Walk-in orders: PSM earns this percent of the subtotal
MANUAL_ORDER_PSM_RATE = Decimal("25")

CENT = Decimal("0.01")


def round_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _share(amount: Decimal, percent: Decimal) -> Decimal:
    return (amount * percent / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class CommissionBreakdown:
    selling_price: float
    purchasing_price: float
    platform_profit: float
    delivery_commission: float
    site_manager_commission: float
    platform_commission: float

    @property
    def seller_payout(self) -> float:
        return self.purchasing_price

    def as_dict(self) -> dict:
        data = asdict(self)
        data["seller_payout"] = self.seller_payout
        return data


def calculate_commissions(total: float, delivery_agent_type: Optional[str] = None,
                          delivery_rate: Optional[float] = None,
                          with_site_manager: bool = False,
                          site_manager_rate: Optional[float] = None) -> CommissionBreakdown:
    """Split an order total between seller, agents and platform.

    >>> calculate_commissions(4500, AgentType.fast_delivery.value).delivery_commission
    390.5
    """
    if total < 0:
        raise ValidationFailed("Order total cannot be negative")

    selling = round_money(total)
    purchasing = (selling / (Decimal("1") + PLATFORM_MARKUP)).quantize(CENT, rounding=ROUND_HALF_UP)
    profit = selling - purchasing

    delivery = Decimal("0")
    if delivery_agent_type is not None:
        rate = Decimal(str(delivery_rate)) if delivery_rate is not None else DEFAULT_SHARES[delivery_agent_type]
        delivery = _share(profit, rate)

    site_manager = Decimal("0")
    if with_site_manager:
        rate = (Decimal(str(site_manager_rate)) if site_manager_rate is not None
                else DEFAULT_SHARES[AgentType.pickup_site_manager.value])
        site_manager = _share(profit, rate)

    # Agents never take more than the profit; the site manager gives way first
    if delivery + site_manager > profit:
        logger.warning("Commission rates %s + %s exceed the profit of %s, capping", delivery, site_manager, profit)
        delivery = min(delivery, profit)
        site_manager = profit - delivery

    platform = profit - delivery - site_manager

    return CommissionBreakdown(
        selling_price=float(selling),
        purchasing_price=float(purchasing),
        platform_profit=float(profit),
        delivery_commission=float(delivery),
        site_manager_commission=float(site_manager),
        platform_commission=float(platform),
    )


# Agent sub-types whose shares come out of the same order's profit
SHARED_WITH = {
    AgentType.fast_delivery.value: (),
    AgentType.pickup_delivery.value: (AgentType.pickup_site_manager.value,),
    AgentType.pickup_site_manager.value: (AgentType.pickup_delivery.value,),
}


def max_commission_rate(agent_type: str) -> float:
    """Highest rate an agent can hold while the default shares of the others still fit."""
    others = sum((DEFAULT_SHARES[other] for other in SHARED_WITH[agent_type]), Decimal("0"))
    return float(Decimal("100") - others)


def check_commission_rate(agent_type: str, rate: float):
    limit = max_commission_rate(agent_type)
    if rate > limit:
        raise ValidationFailed(f"Commission rate for {agent_type} agents cannot exceed {limit:g}%")


def manual_order_commission(subtotal: float, rate: Optional[float] = None) -> float:
    percent = Decimal(str(rate)) if rate is not None else MANUAL_ORDER_PSM_RATE
    return float(_share(round_money(subtotal), percent))


# -----------------------------------------------------------------
# Approvals
# -----------------------------------------------------------------

# Order column prefix released by each approval type
ORDER_FIELD = {
    ApprovalType.seller_payout.value: "seller_payout",
    ApprovalType.fda_commission.value: "fda_commission",
    ApprovalType.pda_commission.value: "pda_commission",
    ApprovalType.psm_commission.value: "psm_commission",
}

# Approvals that must all be granted before an order is completed
REQUIRED_APPROVALS = {
    OrderKind.regular.value: {
        ApprovalType.seller_payout.value,
        ApprovalType.pda_commission.value,
        ApprovalType.psm_commission.value,
    },
    OrderKind.grocery.value: {
        ApprovalType.seller_payout.value,
        ApprovalType.fda_commission.value,
    },
    OrderKind.manual.value: {
        ApprovalType.psm_commission.value,
    },
}


def get_approval(session: Session, approval_id: int) -> AdminApproval:
    approval = session.get(AdminApproval, approval_id)
    if approval is None:
        raise NotFoundError("Approval not found")
    return approval


def approvals_for_order(session: Session, kind: str, order_id: int) -> List[AdminApproval]:
    statement = select(AdminApproval).where(AdminApproval.order_kind == kind, AdminApproval.order_id == order_id)
    return list(session.exec(statement.order_by(AdminApproval.id)).all())


def list_approvals(session: Session, status: str = None, approval_type: str = None,
                   beneficiary_user_id: int = None) -> List[AdminApproval]:
    statement = select(AdminApproval)
    if status:
        statement = statement.where(AdminApproval.status == status)
    if approval_type:
        statement = statement.where(AdminApproval.approval_type == approval_type)
    if beneficiary_user_id:
        statement = statement.where(AdminApproval.beneficiary_user_id == beneficiary_user_id)
    return list(session.exec(statement.order_by(col(AdminApproval.created_at).desc(), col(AdminApproval.id).desc())).all())


def request_approval(session: Session, kind: str, order, approval_type: str, amount: float,
                     beneficiary_user_id: Optional[int], requested_by: Optional[int] = None) -> AdminApproval:
    """Queue a payout for admin review. One record per order and type."""
    if approval_type not in ORDER_FIELD:
        raise ValidationFailed(f"Unknown approval type '{approval_type}'")

    existing = session.exec(
        select(AdminApproval).where(
            AdminApproval.order_kind == kind,
            AdminApproval.order_id == order.id,
            AdminApproval.approval_type == approval_type,
        )
    ).first()
    if existing is not None:
        return existing

    approval = AdminApproval(
        approval_type=approval_type,
        order_kind=kind,
        order_id=order.id,
        beneficiary_user_id=beneficiary_user_id,
        amount=amount,
        requested_by=requested_by,
    )
    session.add(approval)

    prefix = ORDER_FIELD[approval_type]
    setattr(order, f"{prefix}_status", PayoutStatus.awaiting_admin_approval.value)
    setattr(order, f"{prefix}_amount", amount)
    session.add(order)
    session.flush()

    logger.info("Queued %s of %.2f for %s order %s", approval_type, amount, kind, order.id)
    return approval


def _set_order_payout(session: Session, kind: str, order_id: int, approval_type: str, value: str):
    model = order_model(kind)
    column = getattr(model, f"{ORDER_FIELD[approval_type]}_status")
    session.exec(
        update(model)
        .where(model.id == order_id, column != value)
        .values({column: value, model.updated_at: utcnow()})
        .execution_options(synchronize_session=False)
    )
    order = session.get(model, order_id)
    if order is not None:
        set_committed_value(order, f"{ORDER_FIELD[approval_type]}_status", value)


def _review(session: Session, approval: AdminApproval, new_status: str, admin_user_id: int, notes: str = None) -> bool:
    """Flip pending -> new_status. Returns False if someone else reviewed it first."""
    now = utcnow()
    values = {
        "status": new_status,
        "reviewed_by": admin_user_id,
        "reviewed_at": now,
        "review_notes": notes,
    }
    result = session.exec(
        update(AdminApproval)
        .where(AdminApproval.id == approval.id, AdminApproval.status == ApprovalState.pending.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.refresh(approval)
        return False
    for column, value in values.items():
        set_committed_value(approval, column, value)
    return True


def approve(session: Session, approval_id: int, admin_user_id: int, notes: str = None) -> AdminApproval:
    """Approve a payout. Approving an already approved record changes nothing."""
    approval = get_approval(session, approval_id)

    if approval.status == ApprovalState.approved.value:
        return approval
    if approval.status == ApprovalState.rejected.value:
        raise ConflictError("Approval was already rejected")

    order = get_order(session, approval.order_kind, approval.order_id)
    if order.status == OrderStatus.cancelled.value:
        raise ConflictError("Order was cancelled, its payouts cannot be released")

    if not _review(session, approval, ApprovalState.approved.value, admin_user_id, notes):
        if approval.status == ApprovalState.approved.value:
            return approval
        raise ConflictError("Approval was already rejected")

    _set_order_payout(session, approval.order_kind, approval.order_id, approval.approval_type,
                      PayoutStatus.released.value)
    logger.info("Approval %s (%s) released by admin %s", approval.id, approval.approval_type, admin_user_id)

    notify(session, approval.beneficiary_user_id, "payout_released", "Payout released",
           f"{approval.approval_type} of {approval.amount:.2f} has been approved",
           approval.order_kind, approval.order_id)

    complete_if_settled(session, approval.order_kind, approval.order_id, admin_user_id)
    return approval


def reject(session: Session, approval_id: int, admin_user_id: int, notes: str = None) -> AdminApproval:
    approval = get_approval(session, approval_id)

    if approval.status == ApprovalState.rejected.value:
        return approval
    if approval.status == ApprovalState.approved.value:
        raise ConflictError("Approval was already approved")

    if not _review(session, approval, ApprovalState.rejected.value, admin_user_id, notes):
        if approval.status == ApprovalState.rejected.value:
            return approval
        raise ConflictError("Approval was already approved")

    _set_order_payout(session, approval.order_kind, approval.order_id, approval.approval_type,
                      PayoutStatus.rejected.value)
    logger.info("Approval %s (%s) rejected by admin %s", approval.id, approval.approval_type, admin_user_id)

    notify(session, approval.beneficiary_user_id, "payout_rejected", "Payout rejected",
           notes or f"{approval.approval_type} was rejected", approval.order_kind, approval.order_id)
    return approval


def reject_pending_for_order(session: Session, kind: str, order_id: int, reviewer_user_id: int = None,
                             notes: str = "Order cancelled") -> int:
    """Reject every approval of an order that is still pending. Returns how many were rejected."""
    rejected = 0
    for approval in approvals_for_order(session, kind, order_id):
        if approval.status != ApprovalState.pending.value:
            continue
        if not _review(session, approval, ApprovalState.rejected.value, reviewer_user_id, notes):
            continue
        _set_order_payout(session, kind, order_id, approval.approval_type, PayoutStatus.rejected.value)
        rejected += 1
    if rejected:
        logger.info("Rejected %d pending approvals of cancelled %s order %s", rejected, kind, order_id)
    return rejected


def complete_if_settled(session: Session, kind: str, order_id: int, actor_user_id: int = None) -> bool:
    """Move a delivered order to completed once every required payout is approved."""
    order = get_order(session, kind, order_id)
    if order.status != OrderStatus.delivered.value:
        return False

    approved = {
        a.approval_type for a in approvals_for_order(session, kind, order_id)
        if a.status == ApprovalState.approved.value
    }
    if not REQUIRED_APPROVALS[kind] <= approved:
        return False

    try:
        transition(session, kind, order_id, OrderStatus.completed.value,
                   actor_user_id=actor_user_id, note="All payouts approved")
    except ConflictError:
        # Another reviewer completed it concurrently
        logger.info("%s order %s already completed", kind, order_id)
        return False
    return True

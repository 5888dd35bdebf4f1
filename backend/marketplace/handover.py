# Handover verification codes

# A code is shown to one party and typed in by the other at the moment goods
# change hands. Codes are single-use: consuming one is a conditional UPDATE
# from 'active' to 'used', so a replayed code always fails.

import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select, col

from marketplace.auth import generate_code
from marketplace.config import HANDOVER_CODE_LENGTH, MAX_CODE_ATTEMPTS
from marketplace.db_models import ConfirmationCode, CodeStatus, CodeType, utcnow
from marketplace.errors import InvalidCode, CodeLocked, ValidationFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CodePolicy:
    ttl: timedelta
    label: str


POLICIES = {
    CodeType.seller_pickup.value: CodePolicy(timedelta(minutes=30), "pickup"),
    CodeType.buyer_delivery.value: CodePolicy(timedelta(minutes=60), "delivery"),
    CodeType.psm_deposit.value: CodePolicy(timedelta(minutes=60), "deposit"),
    CodeType.buyer_collection.value: CodePolicy(timedelta(hours=72), "collection"),
}


def _policy(code_type: str) -> CodePolicy:
    try:
        return POLICIES[code_type]
    except KeyError:
        raise ValidationFailed(f"Unknown code type '{code_type}'")


def active_code(session: Session, kind: str, order_id: int, code_type: str) -> Optional[ConfirmationCode]:
    statement = (
        select(ConfirmationCode)
        .where(
            ConfirmationCode.order_kind == kind,
            ConfirmationCode.order_id == order_id,
            ConfirmationCode.code_type == code_type,
            ConfirmationCode.status == CodeStatus.active.value,
        )
        .order_by(col(ConfirmationCode.created_at).desc(), col(ConfirmationCode.id).desc())
    )
    return session.exec(statement).first()


def expire_codes(session: Session, kind: str, order_id: int, code_type: str = None):
    conditions = [
        ConfirmationCode.order_kind == kind,
        ConfirmationCode.order_id == order_id,
        ConfirmationCode.status == CodeStatus.active.value,
    ]
    if code_type is not None:
        conditions.append(ConfirmationCode.code_type == code_type)
    session.exec(
        update(ConfirmationCode)
        .where(*conditions)
        .values(status=CodeStatus.expired.value)
        .execution_options(synchronize_session=False)
    )


def issue_code(session: Session, kind: str, order_id: int, code_type: str,
               holder_user_id: Optional[int]) -> ConfirmationCode:
    """Create a fresh code, retiring any earlier active one of the same type."""
    policy = _policy(code_type)
    expire_codes(session, kind, order_id, code_type)

    code = ConfirmationCode(
        order_kind=kind,
        order_id=order_id,
        code_type=code_type,
        code_value=generate_code(HANDOVER_CODE_LENGTH),
        holder_user_id=holder_user_id,
        expires_at=utcnow() + policy.ttl,
    )
    session.add(code)
    session.flush()
    logger.info("Issued %s code for %s order %s", code_type, kind, order_id)
    return code


def consume_code(session: Session, kind: str, order_id: int, code_type: str, submitted: str) -> ConfirmationCode:
    """Check a submitted code and burn it.

    A wrong guess is committed right away so the attempt counter survives the
    failed request.
    """
    label = _policy(code_type).label
    code = active_code(session, kind, order_id, code_type)
    if code is None:
        raise InvalidCode(f"No active {label} code for this order")

    now = utcnow()
    if code.expires_at < now:
        _set_status(session, code, CodeStatus.expired.value)
        session.commit()
        raise InvalidCode(f"The {label} code has expired, request a new one")

    if code.attempts >= MAX_CODE_ATTEMPTS:
        _set_status(session, code, CodeStatus.locked.value)
        session.commit()
        raise CodeLocked(f"Too many wrong attempts, request a new {label} code")

    if not hmac.compare_digest(code.code_value, (submitted or "").strip()):
        session.exec(
            update(ConfirmationCode)
            .where(ConfirmationCode.id == code.id)
            .values(attempts=ConfirmationCode.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        remaining = max(MAX_CODE_ATTEMPTS - code.attempts - 1, 0)
        logger.warning("Wrong %s code for %s order %s (%d attempts left)", label, kind, order_id, remaining)
        raise InvalidCode(f"Invalid {label} code")

    result = session.exec(
        update(ConfirmationCode)
        .where(ConfirmationCode.id == code.id, ConfirmationCode.status == CodeStatus.active.value)
        .values(status=CodeStatus.used.value, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidCode(f"The {label} code was already used")

    set_committed_value(code, "status", CodeStatus.used.value)
    set_committed_value(code, "used_at", now)
    return code


def _set_status(session: Session, code: ConfirmationCode, status: str):
    session.exec(
        update(ConfirmationCode)
        .where(ConfirmationCode.id == code.id, ConfirmationCode.status == CodeStatus.active.value)
        .values(status=status)
        .execution_options(synchronize_session=False)
    )

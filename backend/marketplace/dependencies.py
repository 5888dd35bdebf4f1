# Request dependencies: who is calling, and are they allowed here

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.concurrency import run_in_threadpool
from typing import Optional, Tuple

from marketplace.auth import decode_access_token
from marketplace.database import new_session, get_agent_by_user_id
from marketplace.db_models import User, Agent, Role, ApprovalState

# This tells FastAPI to look for the "Authorization: Bearer <token>" header
bearer_scheme = HTTPBearer()


def _credentials_exception(detail: str = "Could not validate credentials"):
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def load_user_from_token(token: str) -> Tuple[Optional[User], Optional[Agent]]:
    payload = decode_access_token(token)
    if payload is None:
        return None, None

    with new_session() as session:
        user = session.get(User, int(payload["sub"]))
        # The role in the token must still be the stored role
        if user is None or not user.is_active or user.role != payload.get("role"):
            return None, None
        agent = get_agent_by_user_id(session, user.id) if user.role == Role.agent.value else None
        return user, agent


async def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Tuple[User, Optional[Agent]]:
    user, agent = await run_in_threadpool(load_user_from_token, creds.credentials)
    if user is None:
        raise _credentials_exception()
    return user, agent


async def get_current_user(identity=Depends(get_current_identity)) -> User:
    return identity[0]


def require_role(*roles: str):
    """Dependency that only lets the given roles through."""
    allowed = {Role(r).value for r in roles}

    async def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role for this action")
        return user

    return checker


def require_agent(*agent_types: str):
    """Dependency for approved agents of the given sub-types (any sub-type if none given)."""

    async def checker(identity=Depends(get_current_identity)) -> Agent:
        user, agent = identity
        if user.role != Role.agent.value or agent is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Agent account required")
        if agent.approval_status != ApprovalState.approved.value:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                                detail=f"Agent account is {agent.approval_status}, not approved")
        if agent_types and agent.agent_type not in agent_types:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This action is not available to your agent type")
        return agent

    return checker


get_current_buyer = require_role(Role.buyer.value)
get_current_seller = require_role(Role.seller.value)
get_current_admin = require_role(Role.admin.value)
get_current_agent_user = require_role(Role.agent.value)

get_current_agent = require_agent()
get_delivery_agent = require_agent("fast_delivery", "pickup_delivery")
get_fast_delivery_agent = require_agent("fast_delivery")
get_pickup_delivery_agent = require_agent("pickup_delivery")
get_site_manager = require_agent("pickup_site_manager")

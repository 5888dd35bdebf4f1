# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Auth Endpoints ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from marketplace.auth import (
    hash_password,
    verify_password,
    issue_session,
    build_session,
    generate_otp,
    send_otp_email,
)
from marketplace.database import (
    new_session,
    add_user,
    add_agent,
    get_user_by_email,
    get_agent_by_user_id,
    save_reset_otp,
    get_reset_entry,
)
from marketplace.db_models import Role, utcnow
from marketplace.dependencies import get_current_identity
from marketplace.schemas import (
    UserCreate,
    AgentCreate,
    LoginRequest,
    UserRead,
    AgentRead,
    Token,
    SessionContext,
    ForgotPasswordRequest,
    OTPVerifyRequest,
    ResetPasswordRequest,
)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


# Signup Endpoint - buyers and sellers
@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(req: UserCreate):
    with new_session() as session:
        user = add_user(session, req.name, req.email, hash_password(req.password), req.role,
                        phone=req.phone, address=req.address)
        session.commit()
        return UserRead.model_validate(user)


# Agents sign up too, but stay 'pending' until an admin approves them
@router.post("/register/agent", response_model=AgentRead, status_code=status.HTTP_201_CREATED)
def register_agent(req: AgentCreate):
    with new_session() as session:
        user = add_user(session, req.name, req.email, hash_password(req.password), Role.agent.value, phone=req.phone)
        agent = add_agent(session, user, req.agent_type, req.pickup_site_id)
        session.commit()
        return AgentRead.model_validate(agent)


@router.post("/login", response_model=Token)
def login(req: LoginRequest):
    with new_session() as session:
        user = get_user_by_email(session, req.email)

        # Same answer for unknown mail and wrong password
        if user is None or not verify_password(req.password, user.hashed_password):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
        if not user.is_active:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")

        agent = get_agent_by_user_id(session, user.id) if user.role == Role.agent.value else None
        token, context = issue_session(user, agent)
        return Token(access_token=token, session=context)


@router.get("/me", response_model=UserRead)
def read_me(identity=Depends(get_current_identity)):
    user, _ = identity
    return UserRead.model_validate(user)


@router.get("/session", response_model=SessionContext)
def read_session(identity=Depends(get_current_identity)):
    user, agent = identity
    return build_session(user, agent)

# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Password Reset ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.post("/forgot-password")
def forgot_password(req: ForgotPasswordRequest, background_tasks: BackgroundTasks):
    with new_session() as session:
        user = get_user_by_email(session, req.email)
        if user is not None:
            otp = generate_otp()
            save_reset_otp(session, req.email, otp, utcnow() + timedelta(minutes=10))
            session.commit()
            send_otp_email(user.email, otp, background_tasks)

    # Never reveal whether the mail exists
    return {"message": "If the account exists, an OTP has been sent"}


# Lets the client check the OTP before asking for a new password; the OTP stays valid
@router.post("/verify-otp")
def verify_otp(req: OTPVerifyRequest):
    with new_session() as session:
        entry = get_reset_entry(session, req.email, req.otp)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OTP")
        if entry.expires_at < utcnow():
            session.delete(entry)
            session.commit()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="OTP has expired")

    return {"message": "OTP is valid"}


@router.post("/reset-password")
def reset_password(req: ResetPasswordRequest):
    with new_session() as session:
        entry = get_reset_entry(session, req.email, req.otp)
        if entry is None or entry.expires_at < utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired OTP")

        user = get_user_by_email(session, req.email)
        if user is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired OTP")

        user.hashed_password = hash_password(req.new_password)
        session.add(user)
        session.delete(entry)
        session.commit()

    return {"message": "Password updated successfully"}

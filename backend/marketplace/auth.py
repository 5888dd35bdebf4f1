# Password Managements and Session Managements

import hashlib
import hmac
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

# For creating/decoding JWTs (JSON Web Tokens)
from jose import jwt, JWTError

from fastapi import BackgroundTasks
from fastapi_mail import FastMail, MessageSchema, ConnectionConfig, MessageType

from marketplace.config import (
    SECRET_KEY,
    ALGORITHM,
    ACCESS_TOKEN_EXPIRE_MINUTES,
    SESSION_SCHEMA_VERSION,
    SESSION_STORAGE_KEY,
    MAIL_USERNAME,
    MAIL_PASSWORD,
    MAIL_FROM,
    MAIL_PORT,
    MAIL_SERVER,
    MAIL_SUPPRESS_SEND,
)
from marketplace.db_models import User, Agent
from marketplace.schemas import SessionContext

logger = logging.getLogger(__name__)

#--------------------------------------------------------------------------------------------------------------------------------------------

# 1. Numeric codes (password reset OTPs and handover codes)

def generate_code(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def generate_otp() -> str:
    return generate_code(6)

#--------------------------------------------------------------------------------------------------------------------------------------------

# 2. Managing Passwords (salted PBKDF2 from hashlib)

PBKDF2_ITERATIONS = 200_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(input_password: str, hashed_password: str) -> bool:
    try:
        _, iterations, salt, digest = hashed_password.split("$")
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", input_password.encode(), salt.encode(), int(iterations)).hex()
    return hmac.compare_digest(candidate, digest)

#--------------------------------------------------------------------------------------------------------------------------------------------

# 3. JWT Tokens and the session context handed to clients


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "ver": SESSION_SCHEMA_VERSION})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """Payload of a valid token of the current session version, else None."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("ver") != SESSION_SCHEMA_VERSION or payload.get("sub") is None:
        return None
    return payload


def token_claims(user: User, agent: Optional[Agent] = None) -> dict:
    return {
        "sub": str(user.id),
        "role": user.role,
        "agent_type": agent.agent_type if agent else None,
    }


def build_session(user: User, agent: Optional[Agent] = None, expires_at: Optional[datetime] = None) -> SessionContext:
    return SessionContext(
        version=SESSION_SCHEMA_VERSION,
        storage_key=SESSION_STORAGE_KEY,
        user_id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        agent_id=agent.id if agent else None,
        agent_type=agent.agent_type if agent else None,
        approval_status=agent.approval_status if agent else None,
        expires_at=expires_at or datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def issue_session(user: User, agent: Optional[Agent] = None):
    """Token plus the matching session context."""
    lifetime = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    token = create_access_token(token_claims(user, agent), lifetime)
    return token, build_session(user, agent, datetime.now(timezone.utc) + lifetime)

#--------------------------------------------------------------------------------------------------------------------------------------------

# 4. SMTP

mail_config = ConnectionConfig(
    MAIL_USERNAME = MAIL_USERNAME,
    MAIL_PASSWORD = MAIL_PASSWORD,
    MAIL_FROM = MAIL_FROM,
    MAIL_PORT = MAIL_PORT,
    MAIL_SERVER = MAIL_SERVER,
    MAIL_STARTTLS = True,
    MAIL_SSL_TLS = False,
    USE_CREDENTIALS = bool(MAIL_USERNAME),
    VALIDATE_CERTS = True,
    SUPPRESS_SEND = 1 if MAIL_SUPPRESS_SEND else 0,
)


def _queue_mail(message: MessageSchema, background_tasks: Optional[BackgroundTasks]):
    if background_tasks is None:
        logger.debug("No background task runner, mail to %s skipped", message.recipients)
        return
    fm = FastMail(mail_config)
    background_tasks.add_task(fm.send_message, message)


def send_otp_email(email: str, otp: str, background_tasks: BackgroundTasks):
    message = MessageSchema(
        subject="Marketplace - Password Reset OTP",
        recipients=[email],
        body=f"""
        <h3>Password Reset Request</h3>
        <p>Your OTP for resetting your password is:</p>
        <h1>{otp}</h1>
        <p>This OTP is valid for 10 minutes.</p>
        <p>If you did not request this, please ignore this email.</p>
        """,
        subtype=MessageType.html
    )
    _queue_mail(message, background_tasks)


def send_handover_code_email(email: str, order_number: str, code: str, purpose: str,
                             background_tasks: Optional[BackgroundTasks]):
    message = MessageSchema(
        subject=f"Marketplace - Your {purpose} code for {order_number}",
        recipients=[email],
        body=f"""
        <h3>Order {order_number}</h3>
        <p>Give this code to the agent only once you have your goods in hand:</p>
        <h1>{code}</h1>
        """,
        subtype=MessageType.html
    )
    _queue_mail(message, background_tasks)
    logger.info("Queued %s code e-mail for order %s", purpose, order_number)

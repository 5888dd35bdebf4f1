# Configuration

# Every setting comes from the environment (or a .env file next to the app)

import os
import logging
from dotenv import load_dotenv
load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")

# -----------------------------------------------------------------
# Paths
# -----------------------------------------------------------------

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "..", "data")
DB_FILE_PATH = os.path.join(DATA_DIR, "marketplace.db")

# -----------------------------------------------------------------
# Database
# -----------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_FILE_PATH}")
SQL_ECHO = _flag("SQL_ECHO")

# -----------------------------------------------------------------
# Server
# -----------------------------------------------------------------

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

# -----------------------------------------------------------------
# Tokens / Sessions
# -----------------------------------------------------------------

SECRET_KEY = os.getenv("SECRET_KEY", "unsafe-random-string-for-dev")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))  # 1 day

# Bumped whenever the session payload changes shape; older tokens stop validating
SESSION_SCHEMA_VERSION = 1
SESSION_STORAGE_KEY = "market.session"

# Admin account created at startup if it does not exist yet
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Platform Admin")

# -----------------------------------------------------------------
# Workflow
# -----------------------------------------------------------------

MAX_ACTIVE_ORDERS_PER_AGENT = int(os.getenv("MAX_ACTIVE_ORDERS_PER_AGENT", 5))
HANDOVER_CODE_LENGTH = int(os.getenv("HANDOVER_CODE_LENGTH", 6))
MAX_CODE_ATTEMPTS = int(os.getenv("MAX_CODE_ATTEMPTS", 5))
REQUIRE_PAYMENT_CONFIRMATION = _flag("REQUIRE_PAYMENT_CONFIRMATION")
CURRENCY = os.getenv("CURRENCY", "RWF")

# -----------------------------------------------------------------
# HTTP
# -----------------------------------------------------------------

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# -----------------------------------------------------------------
# Mail (OTP + delivery codes)
# -----------------------------------------------------------------

MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM") or MAIL_USERNAME or "noreply@example.com"
MAIL_PORT = int(os.getenv("MAIL_PORT", 587))
MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
# Nothing leaves the process unless credentials are configured
MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND") or not MAIL_USERNAME

# -----------------------------------------------------------------
# Logging
# -----------------------------------------------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

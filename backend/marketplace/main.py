# App

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace import __version__
from marketplace.auth import hash_password
from marketplace.config import configure_logging, CORS_ORIGINS, ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME, HOST, PORT
from marketplace.database import create_db_and_tables, new_session, add_user, get_user_by_email
from marketplace.db_models import Role
from marketplace.dependencies import load_user_from_token
from marketplace.errors import (
    MarketError,
    market_error_handler,
    http_error_handler,
    unhandled_error_handler,
    error_counts,
)
from marketplace.notifications import hub
from marketplace.routers import admin, agent, auth, buyer, catalog, messages, orders, pickup_site, seller
from marketplace.schemas import HealthRead

logger = logging.getLogger(__name__)


def bootstrap_admin():
    if not (ADMIN_EMAIL and ADMIN_PASSWORD):
        return
    with new_session() as session:
        if get_user_by_email(session, ADMIN_EMAIL) is None:
            add_user(session, ADMIN_NAME, ADMIN_EMAIL, hash_password(ADMIN_PASSWORD), Role.admin.value)
            session.commit()
            logger.info("Bootstrapped admin account %s", ADMIN_EMAIL)


# -----------------------------
# Building the App
# -----------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    create_db_and_tables()
    bootstrap_admin()
    hub.bind_loop(asyncio.get_running_loop())
    yield
    # Shutdown
    hub.bind_loop(None)


app = FastAPI(
    title="Marketplace",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(MarketError, market_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

for module in (auth, catalog, buyer, seller, agent, pickup_site, admin, orders, messages):
    app.include_router(module.router)


# Root
@app.get("/")
def root():
    return {"name": "Marketplace API", "version": __version__}


@app.get("/api/health", response_model=HealthRead, tags=["Health"])
def health():
    database = "ok"
    try:
        with new_session() as session:
            session.exec(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check could not reach the database: %s", exc)
        database = "unavailable"
    return HealthRead(status="ok" if database == "ok" else "degraded", database=database, errors=error_counts())


# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Live notifications ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

# Browsers cannot set headers on a WebSocket, so the token comes as a query parameter
@app.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: str = Query(...)):
    user, _ = await run_in_threadpool(load_user_from_token, token)
    if user is None:
        await websocket.close(code=1008)
        return

    await hub.connect(user.id, websocket)
    try:
        while True:
            # Clients may send pings; nothing else is expected
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(user.id, websocket)


def run():
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    run()

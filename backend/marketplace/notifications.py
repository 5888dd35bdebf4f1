# Real-time notifications

# Notifications are stored first, then pushed to any open WebSocket of the
# recipient once the session commits. The push is fire-and-forget: nobody
# waits for it and a failed send only drops that socket.

import asyncio
import logging
from typing import Dict, Set, Optional

from fastapi import WebSocket
from sqlalchemy import event
from sqlmodel import Session

from marketplace.db_models import Notification

logger = logging.getLogger(__name__)


class NotificationHub:

    def __init__(self):
        self._connections: Dict[int, Set[WebSocket]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]):
        self._loop = loop

    async def connect(self, user_id: int, websocket: WebSocket):
        await websocket.accept()
        self._connections.setdefault(user_id, set()).add(websocket)
        logger.debug("User %s connected (%d sockets)", user_id, len(self._connections[user_id]))

    def disconnect(self, user_id: int, websocket: WebSocket):
        sockets = self._connections.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._connections[user_id]

    def connected_users(self):
        return set(self._connections)

    async def _send(self, user_id: int, payload: dict):
        for websocket in list(self._connections.get(user_id, ())):
            try:
                await websocket.send_json(payload)
            except (RuntimeError, OSError) as exc:
                logger.info("Dropping socket of user %s: %s", user_id, exc)
                self.disconnect(user_id, websocket)

    def publish(self, user_id: int, payload: dict):
        """Schedule a push from any thread. Returns immediately."""
        if self._loop is None or user_id not in self._connections:
            return
        asyncio.run_coroutine_threadsafe(self._send(user_id, payload), self._loop)


hub = NotificationHub()

# Pushes waiting for the session that wrote them to commit
PENDING_PUSHES = "pending_pushes"


@event.listens_for(Session, "after_commit")
def _publish_committed(session):
    for user_id, payload in session.info.pop(PENDING_PUSHES, []):
        hub.publish(user_id, payload)


@event.listens_for(Session, "after_transaction_end")
def _drop_uncommitted(session, transaction):
    # Runs after after_commit, so anything left here was rolled back
    if transaction.parent is None:
        session.info.pop(PENDING_PUSHES, None)


def notify(session: Session, user_id: Optional[int], type: str, title: str, message: str,
           order_kind: str = None, order_id: int = None) -> Optional[Notification]:
    if user_id is None:
        return None

    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        order_kind=order_kind,
        order_id=order_id,
    )
    session.add(notification)
    session.flush()

    session.info.setdefault(PENDING_PUSHES, []).append((user_id, {
        "id": notification.id,
        "type": type,
        "title": title,
        "message": message,
        "order_kind": order_kind,
        "order_id": order_id,
        "created_at": notification.created_at.isoformat(),
    }))
    return notification

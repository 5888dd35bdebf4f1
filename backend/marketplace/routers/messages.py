# -------------------------------------------------------------------------------------------------------------------------------------------------
# --- Messages & Notifications ---
# -------------------------------------------------------------------------------------------------------------------------------------------------

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from marketplace.database import (
    new_session,
    add_message,
    list_messages,
    get_message_for,
    count_unread_messages,
    list_notifications,
    count_unread_notifications,
    mark_notification_read,
)
from marketplace.db_models import User
from marketplace.dependencies import get_current_user
from marketplace.errors import NotFoundError
from marketplace.notifications import notify
from marketplace.schemas import MessageCreate, MessageRead, NotificationRead, UnreadCount

router = APIRouter(prefix="/api", tags=["Messages"])


@router.post("/messages", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
def send_message(req: MessageCreate, user: User = Depends(get_current_user)):
    with new_session() as session:
        message = add_message(session, user.id, req.recipient_id, req.subject, req.content,
                              req.order_kind, req.order_id)
        notify(session, req.recipient_id, "message", f"New message from {user.name}", req.subject,
               req.order_kind, req.order_id)
        session.commit()
        return MessageRead.model_validate(message)


@router.get("/messages", response_model=List[MessageRead])
def my_messages(order_kind: Optional[str] = None, order_id: Optional[int] = None,
                user: User = Depends(get_current_user)):
    with new_session() as session:
        return [MessageRead.model_validate(m) for m in list_messages(session, user.id, order_kind, order_id)]


@router.get("/messages/unread/count", response_model=UnreadCount)
def unread_messages(user: User = Depends(get_current_user)):
    with new_session() as session:
        return UnreadCount(count=count_unread_messages(session, user.id))


# Opening a message as its recipient marks it read
@router.get("/messages/{message_id}", response_model=MessageRead)
def read_message(message_id: int, user: User = Depends(get_current_user)):
    with new_session() as session:
        message = get_message_for(session, message_id, user.id)
        if message.recipient_id == user.id and not message.is_read:
            message.is_read = True
            session.add(message)
            session.commit()
        return MessageRead.model_validate(message)


@router.put("/messages/{message_id}/read", response_model=MessageRead)
def mark_message_read(message_id: int, user: User = Depends(get_current_user)):
    with new_session() as session:
        message = get_message_for(session, message_id, user.id)
        if message.recipient_id != user.id:
            raise NotFoundError("Message not found")
        message.is_read = True
        session.add(message)
        session.commit()
        return MessageRead.model_validate(message)


@router.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_message(message_id: int, user: User = Depends(get_current_user)):
    with new_session() as session:
        session.delete(get_message_for(session, message_id, user.id))
        session.commit()

# -------------------------------------------------------------------------------------------------------------------------------------------------

@router.get("/notifications", response_model=List[NotificationRead])
def my_notifications(unread_only: bool = False, user: User = Depends(get_current_user)):
    with new_session() as session:
        return [NotificationRead.model_validate(n) for n in list_notifications(session, user.id, unread_only)]


@router.get("/notifications/unread/count", response_model=UnreadCount)
def unread_notifications(user: User = Depends(get_current_user)):
    with new_session() as session:
        return UnreadCount(count=count_unread_notifications(session, user.id))


@router.put("/notifications/{notification_id}/read", response_model=NotificationRead)
def read_notification(notification_id: int, user: User = Depends(get_current_user)):
    with new_session() as session:
        notification = mark_notification_read(session, notification_id, user.id)
        session.commit()
        return NotificationRead.model_validate(notification)

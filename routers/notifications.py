from typing import List

from fastapi import APIRouter, HTTPException
from sqlalchemy import func, update
from sqlmodel import select

from db import SessionDep
from models import Notification
from notifications import build_notification
from schemas import NotificationCreate

router = APIRouter(tags=["notifications"])


def _get_notification(session: SessionDep, notification_id: str) -> Notification:
    notification = session.get(Notification, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.get("/user/{user_id}", response_model=List[Notification])
def list_user_notifications(user_id: int, session: SessionDep):
    """
    Notifications for a user, newest first.
    """
    return session.exec(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
    ).all()


@router.get("/user/{user_id}/unread-count")
def unread_count(user_id: int, session: SessionDep):
    count = session.exec(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
    ).one()
    return {"count": count}


@router.post("/", response_model=Notification, status_code=201)
def create_notification(notification_in: NotificationCreate, session: SessionDep):
    notification = build_notification(
        notification_in.user_id,
        notification_in.type,
        notification_in.message,
        notification_in.related_item_id,
    )
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification


@router.patch("/user/{user_id}/mark-all-read")
def mark_all_read(user_id: int, session: SessionDep):
    result = session.connection().execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True)
    )
    session.commit()
    return {
        "success": True,
        "message": "All notifications marked as read",
        "updated_count": result.rowcount,
    }


@router.patch("/{notification_id}/read")
def mark_read(notification_id: str, session: SessionDep):
    notification = _get_notification(session, notification_id)
    notification.is_read = True
    session.add(notification)
    session.commit()
    return {"success": True, "message": "Notification marked as read"}


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, session: SessionDep):
    notification = _get_notification(session, notification_id)
    session.delete(notification)
    session.commit()
    return {"success": True, "message": "Notification deleted"}

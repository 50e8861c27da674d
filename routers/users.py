# routers/users.py
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from db import SessionDep
from models import Notification, Request, User
from schemas import UserCreate, UserRead, UserUpdate
from .auth import (
    STAFF_ROLES,
    CurrentUserDep,
    OptionalUserDep,
    StaffUserDep,
    hash_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


def _email_taken(session: SessionDep, email: str, exclude_id=None) -> bool:
    query = select(User.id).where(User.email == email)
    if exclude_id is not None:
        query = query.where(User.id != exclude_id)
    return session.exec(query).first() is not None


def _require_staff_for_role(current: Optional[User]) -> None:
    if current is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    if current.role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Only admins and managers can assign roles.")


@router.get("/", response_model=List[UserRead])
def list_users(session: SessionDep):
    """
    List all users.
    """
    return session.exec(select(User).order_by(User.id)).all()


@router.get("/{user_id}", response_model=UserRead)
def get_user(user_id: int, session: SessionDep):
    """
    Get a single user by ID.
    """
    user = session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.post("/", response_model=UserRead, status_code=201)
def create_user(user_in: UserCreate, session: SessionDep, current: OptionalUserDep):
    """
    Register a user. Anyone may sign up as a plain user; other roles are
    handed out by staff.
    """
    if user_in.role != "user":
        _require_staff_for_role(current)
    if _email_taken(session, user_in.email):
        raise HTTPException(status_code=400, detail="Email already in use")

    user = User(
        name=user_in.name,
        email=user_in.email,
        password=hash_password(user_in.password),
        role=user_in.role,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("Created user %s (%s) with role %s", user.id, user.email, user.role)
    return user


@router.put("/{user_id}", response_model=UserRead)
def update_user(
    user_id: int,
    user_in: UserUpdate,
    session: SessionDep,
    current: CurrentUserDep,
):
    user = session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    if current.id != user_id and current.role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="You can only edit your own account")

    changes = {
        key: value
        for key, value in user_in.model_dump(exclude_unset=True).items()
        if value is not None
    }
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    if changes.get("role", user.role) != user.role:
        _require_staff_for_role(current)

    if "email" in changes and _email_taken(session, changes["email"], exclude_id=user_id):
        raise HTTPException(status_code=400, detail="Email already in use by another user")
    if "password" in changes:
        changes["password"] = hash_password(changes["password"])

    for key, value in changes.items():
        setattr(user, key, value)

    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@router.delete("/{user_id}")
def delete_user(user_id: int, session: SessionDep, current: StaffUserDep):
    user = session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    if user.id == current.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")

    has_requests = session.exec(
        select(Request.id).where(Request.requester_id == user_id)
    ).first()
    if has_requests:
        raise HTTPException(
            status_code=400,
            detail="Cannot delete a user who still has requests",
        )

    # Notifications belong to their recipient
    for notification in session.exec(
        select(Notification).where(Notification.user_id == user_id)
    ).all():
        session.delete(notification)
    session.flush()

    session.delete(user)
    session.commit()
    logger.info("User %s deleted user %s", current.id, user_id)
    return {"success": True, "message": "User deleted successfully"}

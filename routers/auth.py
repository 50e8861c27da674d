import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from itsdangerous import BadData, URLSafeTimedSerializer
from passlib.context import CryptContext
from pydantic import ValidationError as PayloadError
from sqlmodel import select

import config
from db import SessionDep
from models import User
from schemas import LoginData, UserRead

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

serializer = URLSafeTimedSerializer(config.SECRET_KEY)

STAFF_ROLES = ("admin", "manager")


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, stored_password: str) -> bool:
    """
    Check a password against a stored hash.

    Rows imported from the legacy database may still hold plaintext; those
    are compared directly.
    """
    if pwd_context.identify(stored_password) is None:
        return plain_password == stored_password
    return pwd_context.verify(plain_password, stored_password)


def create_session_token(user_id: int, role: str) -> str:
    """
    Store user_id + role in the signed token.
    Example data:
        {"user_id": 3, "role": "manager"}
    """
    return serializer.dumps({"user_id": user_id, "role": role})


def verify_session_token(token: str, max_age_seconds: int = config.SESSION_MAX_AGE):
    """
    Returns dict {'user_id': ..., 'role': ...} if valid,
    or None if token is invalid/expired.
    """
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except BadData:
        return None


def get_optional_user(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias="session"),
) -> Optional[User]:
    """
    Reads the 'session' cookie, verifies the token and looks up the user.
    Returns None without a cookie, raises 401 if the cookie is invalid.
    """
    if session_token is None:
        return None

    data = verify_session_token(session_token)
    if not data:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    user = session.get(User, data["user_id"])
    if user is None:
        raise HTTPException(status_code=401, detail="User not found for this session")

    return user


OptionalUserDep = Annotated[Optional[User], Depends(get_optional_user)]


def get_current_user(user: OptionalUserDep) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


def require_staff(user: CurrentUserDep) -> User:
    if user.role not in STAFF_ROLES:
        raise HTTPException(
            status_code=403, detail="Only admins and managers can do this."
        )
    return user


StaffUserDep = Annotated[User, Depends(require_staff)]


@router.post("/login")
async def login(request: Request, session: SessionDep):
    """
    Log in with email + password and set a signed cookie.

    Accepts either JSON (API/Swagger) or form-data (from HTML form).
    """
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        data = await request.json()
        try:
            payload = LoginData.model_validate(data)
        except PayloadError:
            raise HTTPException(
                status_code=400, detail="Email and password are required")
    else:
        form = await request.form()

        raw_email = form.get("email")
        raw_password = form.get("password")

        email = raw_email if isinstance(raw_email, str) else None
        password = raw_password if isinstance(raw_password, str) else None

        if not email or not password:
            raise HTTPException(
                status_code=400, detail="Email and password are required")

        payload = LoginData(email=email, password=password)

    user = session.exec(
        select(User).where(User.email == payload.email)
    ).first()

    if user is None or not verify_password(payload.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if pwd_context.identify(user.password) is None or pwd_context.needs_update(user.password):
        user.password = hash_password(payload.password)
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("Upgraded stored password for user %s", user.id)

    token = create_session_token(user.id, user.role)

    resp = JSONResponse(
        {
            "success": True,
            "message": "Login successful",
            "user": UserRead.model_validate(user).model_dump(),
        }
    )
    resp.set_cookie(
        key="session",
        value=token,
        httponly=True,
        secure=False,
        samesite="lax",
        max_age=config.SESSION_MAX_AGE,
    )
    return resp


@router.post("/logout")
def logout():
    """
    Clear the session cookie.
    """
    response = JSONResponse({"success": True, "message": "Logged out"})
    response.delete_cookie("session")
    return response


@router.get("/me", response_model=UserRead)
def read_me(current: CurrentUserDep):
    """
    Get info about the currently logged-in user.
    """
    return current

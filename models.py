from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_field():
    return Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    # passlib hash, or plaintext for rows imported from the legacy database
    password: str
    role: str = "user"  # admin | manager | user
    created_at: datetime = timestamp_field()


class Category(SQLModel, table=True):
    __tablename__ = "categories"

    id: str = Field(primary_key=True)
    name: str = Field(unique=True)
    description: str = ""
    created_at: datetime = timestamp_field()
    updated_at: datetime = timestamp_field()


class Item(SQLModel, table=True):
    __tablename__ = "items"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: str = ""
    category: str = "other"
    quantity: int = 0
    min_quantity: int = 0
    status: str = "out-of-stock"  # in-stock | low-stock | out-of-stock
    price: Optional[float] = None
    location: Optional[str] = None
    is_active: bool = True
    last_restocked: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = timestamp_field()
    updated_at: datetime = timestamp_field()


class Request(SQLModel, table=True):
    __tablename__ = "requests"

    id: str = Field(primary_key=True)
    project_name: str
    requester_id: int = Field(foreign_key="users.id", index=True)
    reason: str = ""
    priority: str = "medium"  # low | medium | high
    due_date: Optional[date] = None
    status: str = "pending"  # pending | approved | denied | fulfilled | out_of_stock
    created_at: datetime = timestamp_field()
    updated_at: datetime = timestamp_field()


class RequestItem(SQLModel, table=True):
    __tablename__ = "request_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: str = Field(foreign_key="requests.id", index=True)
    item_id: int = Field(foreign_key="items.id", index=True)
    quantity: int


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: str = Field(primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    type: str
    message: str
    # holds a request id
    related_item_id: Optional[str] = None
    is_read: bool = False
    created_at: datetime = timestamp_field()

from datetime import date, datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

RequestStatus = Literal["pending", "approved", "denied", "fulfilled", "out_of_stock"]
Priority = Literal["low", "medium", "high"]
Role = Literal["admin", "manager", "user"]


# Items

class ItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    description: str = ""
    category: str = "other"
    quantity: int = Field(default=0, ge=0)
    min_quantity: int = Field(default=0, ge=0, alias="minQuantity")
    price: Optional[float] = None
    location: Optional[str] = None


class ItemUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    min_quantity: Optional[int] = Field(default=None, ge=0, alias="minQuantity")
    price: Optional[float] = None
    location: Optional[str] = None


class ItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    name: str
    description: str
    category: str
    quantity: int
    min_quantity: int = Field(alias="minQuantity")
    status: str
    price: Optional[float] = None
    location: Optional[str] = None
    last_restocked: Optional[datetime] = Field(default=None, alias="lastRestocked")


# Categories

class CategoryCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


# Requests

class RequestItemDraft(BaseModel):
    # ids arrive as numbers or numeric strings from the browser
    item_id: Union[int, str, None] = None
    quantity: int = 1


class RequestCreate(BaseModel):
    project_name: str = ""
    requester_id: Optional[int] = None
    reason: str = ""
    priority: Priority = "medium"
    due_date: Optional[date] = None
    items: List[RequestItemDraft] = []


class RequestStatusUpdate(BaseModel):
    # checked against the valid tokens by the transition engine
    status: str


class RequestLineRead(BaseModel):
    id: int
    request_id: str
    item_id: int
    quantity: int
    name: str
    description: str
    category: str


class RequestRead(BaseModel):
    id: str
    project_name: str
    requester_id: int
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    reason: str
    priority: str
    due_date: Optional[date] = None
    status: str
    created_at: datetime
    updated_at: datetime
    items: List[RequestLineRead] = []


class StatusUpdateResult(BaseModel):
    success: bool = True
    message: str
    request: RequestRead
    items_updated: bool = False
    warnings: List[str] = []


# Users

class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=1)
    role: Role = "user"


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=1)
    role: Optional[Role] = None


class UserRead(BaseModel):
    id: int
    email: str
    name: str
    role: str

    model_config = ConfigDict(from_attributes=True)


class LoginData(BaseModel):
    email: str
    password: str


# Notifications

class NotificationCreate(BaseModel):
    user_id: int
    type: str = Field(min_length=1)
    message: str = Field(min_length=1)
    related_item_id: Optional[str] = None


# Chat

class ChatRequest(BaseModel):
    message: str = ""
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class ChatMessage(BaseModel):
    id: str
    role: str = "assistant"
    content: str
    timestamp: datetime


class ChatResponse(BaseModel):
    message: ChatMessage
    session_id: str = Field(alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class ChatSessionCreate(BaseModel):
    user_id: Optional[int] = Field(default=None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)

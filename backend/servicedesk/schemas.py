from datetime import datetime
from typing import Optional, Any, Dict, List
from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID


class UserOut(BaseModel):
    id: UUID
    email: str
    full_name: Optional[str] = None
    role: str
    model_config = ConfigDict(from_attributes=True)


class CaseCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    # severity, serial number, customer, supplier, site, requester or equipment code
    detail: Optional[str] = None
    handler_id: Optional[UUID] = None


class CaseOut(BaseModel):
    id: UUID
    case_type: str
    title: str
    description: Optional[str] = None
    detail: Optional[str] = None
    status: str
    created_at: datetime
    in_progress_at: Optional[datetime] = None
    end_date: Optional[datetime] = None
    reporter_id: UUID
    handler_id: Optional[UUID] = None
    model_config = ConfigDict(from_attributes=True)


class NotificationOut(BaseModel):
    id: UUID
    user_id: UUID
    kind: str
    title: str
    message: str
    case_id: Optional[UUID] = None
    case_type: Optional[str] = None
    is_read: bool
    meta: Dict[str, Any] = Field(default_factory=dict)
    action_url: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class NotificationPage(BaseModel):
    notifications: List[NotificationOut]
    pagination: Pagination


class UnreadCountOut(BaseModel):
    unreadCount: int


class NotificationStatsOut(BaseModel):
    total: int
    unread: int
    by_kind: Dict[str, int]


class LongTermCheckOut(BaseModel):
    success: bool = True
    notificationsSent: int

from pydantic import BaseModel
from typing import List, Optional

from app.core.permissions import AccessLevel


class ToggleAutoRenewRequest(BaseModel):
    subscription_id: str
    auto_renew: bool


class ToggleAutoRenewResponse(BaseModel):
    subscription_id: str
    auto_renew: bool
    status: str
    cancel_at_period_end: bool
    current_period_end: Optional[int] = None


class DeleteUserRequest(BaseModel):
    clerk_id: str


class AdminCreate(BaseModel):
    clerk_id: str
    access_level: AccessLevel


class AdminLevelUpdate(BaseModel):
    access_level: AccessLevel


class AdminResponse(BaseModel):
    clerk_id: str
    email: str
    name: Optional[str] = None
    access_level: str
    became_admin_at: Optional[str] = None


class AccessResponse(BaseModel):
    level: Optional[str] = None
    source: str
    pages: List[str]


class AccessCheckResponse(BaseModel):
    page: str
    allowed: bool
    message: Optional[str] = None

from pydantic import BaseModel, Field
from typing import Optional


class UserResponse(BaseModel):
    id: int
    clerk_id: str
    email: str
    name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    subscription_plan_id: str
    subscription_status: str
    current_period_end: Optional[int] = None
    auto_renew: Optional[bool] = None
    is_admin: bool = False

    class Config:
        from_attributes = True


class ProfileUpdate(BaseModel):
    # Only profile fields; billing/subscription columns are not accepted here
    name: Optional[str] = Field(None, max_length=200)
    profile_picture_url: Optional[str] = Field(None, max_length=2048)


class SubscriptionResponse(BaseModel):
    plan_id: str
    plan_name: Optional[str] = None
    status: str
    status_text: str
    has_active_access: bool
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_end: Optional[int] = None
    auto_renew: Optional[bool] = None


class UploadResponse(BaseModel):
    id: int
    filename: str
    url: str
    file_type: str
    file_size: int
    description: Optional[str] = None

    class Config:
        from_attributes = True

from pydantic import BaseModel
from typing import Literal


class CheckoutSessionRequest(BaseModel):
    plan_id: str
    billing_period: Literal["monthly", "annual"] = "monthly"


class CheckoutSessionResponse(BaseModel):
    url: str
    session_id: str


class PortalSessionResponse(BaseModel):
    url: str

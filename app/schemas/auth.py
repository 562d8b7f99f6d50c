from pydantic import BaseModel, EmailStr, Field

MIN_PASSWORD_LENGTH = 8


class PasswordUpdateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=12)
    new_password: str


class GuestResetCodeRequest(BaseModel):
    email: EmailStr


class GuestResetVerifyRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=12)
    new_password: str


class MessageResponse(BaseModel):
    success: bool = True
    message: str

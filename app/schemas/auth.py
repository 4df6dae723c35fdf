from typing import List, Optional
import uuid

from pydantic import BaseModel, EmailStr, Field

from app.models.user import AppRole
from app.schemas.base import BaseResponseSchema


class LoginRequest(BaseModel):
    """Login request schema."""
    email: EmailStr = Field(..., description="User email address")
    password: str = Field(..., min_length=6, description="User password")


class RefreshTokenRequest(BaseModel):
    """Refresh token request schema."""
    refresh_token: str = Field(..., description="JWT refresh token")


class TokenResponse(BaseModel):
    """Token response schema."""
    access_token: str = Field(..., description="JWT access token")
    refresh_token: str = Field(..., description="JWT refresh token")
    token_type: str = Field(default="bearer", description="Token type")
    expires_in: int = Field(..., description="Access token expiration in seconds")


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = None
    roles: List[AppRole] = Field(default_factory=lambda: [AppRole.STAFF])


class UserResponse(BaseResponseSchema):
    id: uuid.UUID
    email: str
    full_name: str
    phone: Optional[str] = None
    is_active: bool
    roles: List[str] = []


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = None
    roles: Optional[List[AppRole]] = Field(None, min_length=1, description="Replaces the active role set")
    is_active: Optional[bool] = None


class PasswordResetRequest(BaseModel):
    new_password: Optional[str] = Field(None, min_length=6, description="Generated when omitted")


class PasswordResetResponse(BaseModel):
    user_id: uuid.UUID
    password: str = Field(..., description="Shown once; hand it to the user")

"""User, signup and platform settings schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class _EmailModel(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SendVerificationRequest(_EmailModel):
    """Start signup: email plus the identity-provider client used by the front end."""
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    platform_name: Optional[str] = None
    brand_logo_url: Optional[str] = None


class VerifyEmailRequest(_EmailModel):
    verification_code: str = Field(..., min_length=1)


class CompleteSignupRequest(_EmailModel):
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    is_holder: bool = False


class LoginRequest(_EmailModel):
    password: str = Field(..., min_length=1)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(_EmailModel):
    pass


class ResetTokenPasswordRequest(_EmailModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8, max_length=128)


class ResetPasswordRequest(_EmailModel):
    old_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)


class UserProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    profile_img: Optional[str] = None
    public_profile: Optional[bool] = None


class PlatformSettingsRequest(BaseModel):
    email_from: Optional[EmailStr] = None
    platform_name: Optional[str] = Field(default=None, max_length=100)
    brand_logo_url: Optional[str] = None
    support_email: Optional[EmailStr] = None
    api_endpoint: Optional[str] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class UserProfileResponse(BaseModel):
    id: uuid.UUID
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_img: Optional[str] = None
    public_profile: bool = False
    is_email_verified: bool = False
    keycloak_user_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UserPublicProfile(BaseModel):
    id: uuid.UUID
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_img: Optional[str] = None

    model_config = {"from_attributes": True}


class SignupResponse(BaseModel):
    user_id: uuid.UUID
    email: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    refresh_expires_in: Optional[int] = None
    token_type: str = "Bearer"


class ResetPasswordResponse(BaseModel):
    id: uuid.UUID
    email: str


class UserExistsResponse(BaseModel):
    exists: bool
    is_email_verified: bool = False
    is_registered: bool = False


class UserKeycloakId(BaseModel):
    email: str
    keycloak_user_id: Optional[str] = None


class UserActivityItem(BaseModel):
    id: uuid.UUID
    org_id: Optional[uuid.UUID] = None
    action: str
    details: str
    created_at: datetime

    model_config = {"from_attributes": True}


class PlatformSettingsResponse(BaseModel):
    email_from: Optional[str] = None
    platform_name: Optional[str] = None
    brand_logo_url: Optional[str] = None
    support_email: Optional[str] = None
    api_endpoint: Optional[str] = None

    model_config = {"from_attributes": True}

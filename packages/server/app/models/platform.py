"""Platform-wide configuration and password reset tokens."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class PlatformConfig(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "platform_config"

    email_from: Optional[str] = None
    platform_name: Optional[str] = None
    brand_logo_url: Optional[str] = None
    support_email: Optional[str] = None
    api_endpoint: Optional[str] = None


class PasswordResetToken(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "token"

    user_id: uuid.UUID = Field(foreign_key="user.id", nullable=False, index=True)
    token: str = Field(nullable=False, unique=True, index=True)
    expires_at: datetime = Field(nullable=False, sa_type=sa.DateTime(timezone=True))

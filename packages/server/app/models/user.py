"""User model."""

from typing import Optional

from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class User(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "user"

    email: str = Field(nullable=False, unique=True, index=True)  # always lowercased
    username: Optional[str] = Field(default=None, unique=True, index=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_img: Optional[str] = None
    public_profile: bool = Field(default=False, nullable=False)

    is_email_verified: bool = Field(default=False, nullable=False)
    verification_code: Optional[str] = None

    keycloak_user_id: Optional[str] = Field(default=None, index=True)
    # Tagged ciphertext (see app.core.crypto) of the client the user signed up through
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

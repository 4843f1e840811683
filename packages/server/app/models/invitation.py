"""Organization invitation model."""

import uuid

from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampMixin, UUIDMixin


class OrgInvitation(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "org_invitations"

    org_id: uuid.UUID = Field(foreign_key="organisation.id", nullable=False, index=True)
    email: str = Field(nullable=False, index=True)
    status: str = Field(default="pending", nullable=False)  # pending | accepted | rejected
    org_roles: list[str] = Field(default_factory=list, sa_type=JSONType, nullable=False)  # OrgRole ids
    created_by: uuid.UUID = Field(foreign_key="user.id", nullable=False)

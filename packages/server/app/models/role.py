"""Role catalog and user-org-role membership (join table)."""

from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class OrgRole(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "org_roles"

    name: str = Field(nullable=False, unique=True, index=True)  # owner | admin | ... | platform_admin
    description: str = Field(default="", nullable=False)


class UserOrgRole(UUIDMixin, SQLModel, table=True):
    __tablename__ = "user_org_roles"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "org_id", "org_role_id", name="uq_user_org_role"),
    )

    user_id: uuid.UUID = Field(foreign_key="user.id", nullable=False, index=True)
    # Null for platform-level roles (holder, platform_admin)
    org_id: Optional[uuid.UUID] = Field(default=None, foreign_key="organisation.id", index=True)
    org_role_id: uuid.UUID = Field(foreign_key="org_roles.id", nullable=False)
    idp_role_id: Optional[str] = None

"""User activity log and organization deletion audit records."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import JSONType, UUIDMixin, utcnow


class UserActivity(UUIDMixin, SQLModel, table=True):
    __tablename__ = "user_activity"

    user_id: uuid.UUID = Field(foreign_key="user.id", nullable=False, index=True)
    org_id: Optional[uuid.UUID] = Field(default=None, foreign_key="organisation.id", index=True)
    action: str = Field(nullable=False)
    details: str = Field(default="", nullable=False)
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )


class OrgDeletionRecord(UUIDMixin, SQLModel, table=True):
    """Survives the organization it describes, so no foreign keys."""

    __tablename__ = "org_deletion_records"

    org_id: uuid.UUID = Field(nullable=False, index=True)
    user_id: uuid.UUID = Field(nullable=False)
    deleted_by: uuid.UUID = Field(nullable=False)
    record_type: str = Field(nullable=False)  # organisation | invitation | user_org_role | ...
    user_email: str = Field(nullable=False)
    txn_metadata: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )

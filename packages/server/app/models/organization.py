"""Organization (tenant) and its DIDs and notification endpoints."""

from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampMixin, UUIDMixin


class Organization(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organisation"

    name: str = Field(nullable=False, unique=True, index=True)
    slug: str = Field(unique=True, nullable=False, index=True)
    description: str = Field(default="", nullable=False)
    logo_url: Optional[str] = None
    website: Optional[str] = None
    public_profile: bool = Field(default=False, nullable=False)

    # Identity-provider client (externally owned; cached references only)
    client_id: Optional[str] = Field(default=None, index=True)
    client_secret: Optional[str] = None  # masked
    idp_id: Optional[str] = None

    primary_did: Optional[str] = None
    did_namespace: Optional[str] = None

    created_by: Optional[uuid.UUID] = None
    last_changed_by: Optional[uuid.UUID] = None


class OrgDid(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "org_dids"

    org_id: uuid.UUID = Field(foreign_key="organisation.id", nullable=False, index=True)
    did: str = Field(nullable=False, index=True)
    is_primary_did: bool = Field(default=False, nullable=False)
    did_document: Optional[dict] = Field(default=None, sa_type=JSONType)


class OrgNotificationEndpoint(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "notification"

    org_id: uuid.UUID = Field(foreign_key="organisation.id", nullable=False, index=True)
    webhook_endpoint: str = Field(nullable=False)

"""
Organization-related Pydantic schemas shared between the gateway and workflows.

Covers: org CRUD request/response, invitations and their lifecycle states,
client credentials, primary DID, dashboard counts.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .common import RoleRef


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

# Valid state transitions for invitations (accepted/rejected are terminal)
INVITATION_TRANSITIONS: dict[InvitationStatus, list[InvitationStatus]] = {
    InvitationStatus.PENDING: [InvitationStatus.ACCEPTED, InvitationStatus.REJECTED],
    InvitationStatus.ACCEPTED: [],
    InvitationStatus.REJECTED: [],
}

LOGO_DATA_URI_PATTERN = r'^data:image/([a-zA-Z]*);base64,([^"]*)$'


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=200, description="Organization display name")
    description: str = Field(default="", max_length=500)
    logo: Optional[str] = Field(
        default=None,
        description="Logo as a base64 data URI (data:image/png;base64,...)",
    )
    website: Optional[str] = Field(default=None, max_length=200)
    public_profile: bool = False
    webhook_endpoint: Optional[str] = Field(default=None, pattern=r"^https?://")

    @field_validator("name", "description")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return value.strip()


class OrgUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = Field(None, max_length=500)
    logo: Optional[str] = None
    website: Optional[str] = Field(None, max_length=200)
    public_profile: Optional[bool] = None


class InvitationItem(BaseModel):
    email: EmailStr
    org_role_ids: list[str] = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class BulkInvitationRequest(BaseModel):
    invitations: list[InvitationItem] = Field(..., min_length=1)


class UpdateInvitationStatusRequest(BaseModel):
    org_id: uuid.UUID
    status: InvitationStatus

    @field_validator("status")
    @classmethod
    def terminal_only(cls, value: InvitationStatus) -> InvitationStatus:
        if value == InvitationStatus.PENDING:
            raise ValueError("status must be accepted or rejected")
        return value


class UpdateUserRolesRequest(BaseModel):
    org_role_ids: list[str] = Field(..., min_length=1)


class PrimaryDidRequest(BaseModel):
    did: str = Field(..., min_length=7, pattern=r"^did:")


class WebhookEndpointRequest(BaseModel):
    webhook_endpoint: str = Field(..., pattern=r"^https?://")


class ClientCredentialsRequest(BaseModel):
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgResponse(BaseModel):
    """Default organization projection; never carries the client secret."""

    id: uuid.UUID
    name: str
    slug: str
    description: str
    logo_url: Optional[str] = None
    website: Optional[str] = None
    public_profile: bool
    client_id: Optional[str] = None
    idp_id: Optional[str] = None
    primary_did: Optional[str] = None
    did_namespace: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrgListItem(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    description: str
    logo_url: Optional[str] = None
    roles: list[str]  # the requesting user's roles in this org

    model_config = {"from_attributes": True}


class OrgPublicProfile(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    description: str
    logo_url: Optional[str] = None
    website: Optional[str] = None
    dids: list[str] = []

    model_config = {"from_attributes": True}


class OrgCredentialsResponse(BaseModel):
    client_id: str
    client_secret: str
    idp_id: Optional[str] = None


class ClientTokenResponse(BaseModel):
    access_token: str
    expires_in: int
    token_type: str = "Bearer"


class InvitationResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    email: str
    status: InvitationStatus
    roles: list[RoleRef]
    created_by: uuid.UUID
    created_at: datetime
    organisation_name: Optional[str] = None


class InvitationBatchResult(BaseModel):
    sent: list[str]
    skipped: list[str]  # already invited, or the sender's own address
    failed: list[str] = []  # invitation email could not be delivered; no row kept


class OrgDashboardResponse(BaseModel):
    users: int
    pending_invitations: int
    dids: int


class OrgUserItem(BaseModel):
    id: uuid.UUID
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: list[str]


class OrgOwnerResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class OrgDeletionResponse(BaseModel):
    org_id: uuid.UUID
    deleted: dict[str, int]
    notified: list[str]
    notification_failures: list[str]


class PrimaryDidResponse(BaseModel):
    org_id: uuid.UUID
    did: str
    did_namespace: Optional[str] = None


class OrgRegistrationRepairResult(BaseModel):
    registered: list[uuid.UUID]
    failed: list[uuid.UUID]

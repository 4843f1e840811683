"""
RPC command catalogue shared by the HTTP gateway and the backend workers.

Every command is a pydantic model whose ``cmd`` literal is the wire
discriminator. ``RpcCommand`` is the closed union of all of them; the worker
dispatcher must register a handler for every member.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any, ClassVar, Literal, Optional, Union, get_args

from pydantic import BaseModel, Field, TypeAdapter

from .common import PageQuery
from .organizations import (
    InvitationItem,
    InvitationStatus,
    OrgCreateRequest,
    OrgUpdateRequest,
)
from .users import PlatformSettingsRequest, UserProfileUpdateRequest

ORGANIZATION_SERVICE = "organization"
USER_SERVICE = "user"


class Principal(BaseModel):
    """Authenticated caller, resolved once by the gateway and carried in commands."""

    user_id: uuid.UUID
    email: str
    keycloak_user_id: Optional[str] = None
    is_platform_admin: bool = False
    # org id -> role names held in that org
    org_roles: dict[str, list[str]] = Field(default_factory=dict)

    def roles_in(self, org_id: uuid.UUID | str) -> list[str]:
        return self.org_roles.get(str(org_id), [])


class _OrgCommand(BaseModel):
    service: ClassVar[str] = ORGANIZATION_SERVICE


class _UserCommand(BaseModel):
    service: ClassVar[str] = USER_SERVICE


# ---------------------------------------------------------------------------
# Organization service
# ---------------------------------------------------------------------------

class CreateOrganization(_OrgCommand):
    cmd: Literal["create-organization"] = "create-organization"
    req: OrgCreateRequest
    principal: Principal


class UpdateOrganization(_OrgCommand):
    cmd: Literal["update-organization"] = "update-organization"
    org_id: uuid.UUID
    req: OrgUpdateRequest
    principal: Principal


class GetOrganization(_OrgCommand):
    cmd: Literal["get-organization-by-id"] = "get-organization-by-id"
    org_id: uuid.UUID


class GetOrganizations(_OrgCommand):
    cmd: Literal["get-organizations"] = "get-organizations"
    principal: Principal
    page: PageQuery = Field(default_factory=PageQuery)


class GetPublicOrganizations(_OrgCommand):
    cmd: Literal["get-public-organizations"] = "get-public-organizations"
    page: PageQuery = Field(default_factory=PageQuery)


class GetOrganizationPublicProfile(_OrgCommand):
    cmd: Literal["get-organization-public-profile"] = "get-organization-public-profile"
    slug: str


class GetOrganizationDashboard(_OrgCommand):
    cmd: Literal["get-organization-dashboard"] = "get-organization-dashboard"
    org_id: uuid.UUID


class GetOrgRoles(_OrgCommand):
    cmd: Literal["get-org-roles"] = "get-org-roles"
    org_id: uuid.UUID


class GetOrganizationOwner(_OrgCommand):
    cmd: Literal["get-organization-owner"] = "get-organization-owner"
    org_id: uuid.UUID


class GetOrgUsers(_OrgCommand):
    cmd: Literal["fetch-organization-users"] = "fetch-organization-users"
    org_id: uuid.UUID
    page: PageQuery = Field(default_factory=PageQuery)


class DeleteOrganization(_OrgCommand):
    cmd: Literal["delete-organization"] = "delete-organization"
    org_id: uuid.UUID
    principal: Principal


class CreateOrgCredentials(_OrgCommand):
    cmd: Literal["create-org-credentials"] = "create-org-credentials"
    org_id: uuid.UUID
    principal: Principal


class GetOrgCredentials(_OrgCommand):
    cmd: Literal["get-org-credentials"] = "get-org-credentials"
    org_id: uuid.UUID


class DeleteOrgCredentials(_OrgCommand):
    cmd: Literal["delete-org-credentials"] = "delete-org-credentials"
    org_id: uuid.UUID
    principal: Principal


class AuthenticateClient(_OrgCommand):
    cmd: Literal["authenticate-client-credentials"] = "authenticate-client-credentials"
    client_id: str
    client_secret: str


class SetPrimaryDid(_OrgCommand):
    cmd: Literal["set-primary-did"] = "set-primary-did"
    org_id: uuid.UUID
    did: str


class RegisterOrgWebhook(_OrgCommand):
    cmd: Literal["register-org-webhook-endpoint-for-notification"] = (
        "register-org-webhook-endpoint-for-notification"
    )
    org_id: uuid.UUID
    webhook_endpoint: str


class RegisterOrgsMapUsers(_OrgCommand):
    cmd: Literal["register-orgs-users-map"] = "register-orgs-users-map"


class SendInvitations(_OrgCommand):
    cmd: Literal["send-invitation"] = "send-invitation"
    org_id: uuid.UUID
    invitations: list[InvitationItem]
    principal: Principal


class GetInvitationsByOrg(_OrgCommand):
    cmd: Literal["get-invitations-by-orgId"] = "get-invitations-by-orgId"
    org_id: uuid.UUID
    page: PageQuery = Field(default_factory=PageQuery)


class DeleteInvitation(_OrgCommand):
    cmd: Literal["delete-organization-invitation"] = "delete-organization-invitation"
    org_id: uuid.UUID
    invitation_id: uuid.UUID


class UpdateUserRoles(_OrgCommand):
    cmd: Literal["update-user-roles"] = "update-user-roles"
    org_id: uuid.UUID
    user_id: uuid.UUID
    org_role_ids: list[str]
    principal: Principal


# ---------------------------------------------------------------------------
# User service
# ---------------------------------------------------------------------------

class SendVerificationMail(_UserCommand):
    cmd: Literal["send-verification-mail"] = "send-verification-mail"
    email: str
    client_id: str
    client_secret: str
    platform_name: Optional[str] = None
    brand_logo_url: Optional[str] = None


class VerifyEmail(_UserCommand):
    cmd: Literal["user-email-verification"] = "user-email-verification"
    email: str
    verification_code: str


class CompleteSignup(_UserCommand):
    cmd: Literal["add-user"] = "add-user"
    email: str
    password: str
    first_name: str
    last_name: str
    is_holder: bool = False


class UserLogin(_UserCommand):
    cmd: Literal["user-login"] = "user-login"
    email: str
    password: str


class RefreshToken(_UserCommand):
    cmd: Literal["refresh-token-details"] = "refresh-token-details"
    refresh_token: str


class ForgotPassword(_UserCommand):
    cmd: Literal["forgot-password"] = "forgot-password"
    email: str


class ResetTokenPassword(_UserCommand):
    cmd: Literal["reset-token-password"] = "reset-token-password"
    email: str
    token: str
    password: str


class ResetPassword(_UserCommand):
    cmd: Literal["user-reset-password"] = "user-reset-password"
    email: str
    old_password: str
    new_password: str


class GetUserProfile(_UserCommand):
    cmd: Literal["get-user-profile"] = "get-user-profile"
    user_id: uuid.UUID


class GetUserPublicProfile(_UserCommand):
    cmd: Literal["get-user-public-profile"] = "get-user-public-profile"
    username: str


class UpdateUserProfile(_UserCommand):
    cmd: Literal["update-user-profile"] = "update-user-profile"
    user_id: uuid.UUID
    req: UserProfileUpdateRequest


class GetUserInvitations(_UserCommand):
    cmd: Literal["get-user-invitations"] = "get-user-invitations"
    principal: Principal
    status: Optional[InvitationStatus] = None
    page: PageQuery = Field(default_factory=PageQuery)


class UpdateInvitationStatus(_UserCommand):
    cmd: Literal["update-invitation-status"] = "update-invitation-status"
    invitation_id: uuid.UUID
    org_id: uuid.UUID
    status: InvitationStatus
    principal: Principal


class CheckUserExists(_UserCommand):
    cmd: Literal["check-user-exist"] = "check-user-exist"
    email: str


class GetUserActivity(_UserCommand):
    cmd: Literal["get-user-activity"] = "get-user-activity"
    user_id: uuid.UUID
    limit: int = 10


class GetUserByMail(_UserCommand):
    cmd: Literal["get-user-by-mail"] = "get-user-by-mail"
    email: str


class GetUserKeycloakIds(_UserCommand):
    cmd: Literal["get-user-keycloak-id"] = "get-user-keycloak-id"
    emails: list[str]


class GetPlatformSettings(_UserCommand):
    cmd: Literal["fetch-platform-settings"] = "fetch-platform-settings"


class UpdatePlatformSettings(_UserCommand):
    cmd: Literal["update-platform-settings"] = "update-platform-settings"
    req: PlatformSettingsRequest
    principal: Principal


# ---------------------------------------------------------------------------
# Union + reply envelope
# ---------------------------------------------------------------------------

RpcCommand = Annotated[
    Union[
        CreateOrganization,
        UpdateOrganization,
        GetOrganization,
        GetOrganizations,
        GetPublicOrganizations,
        GetOrganizationPublicProfile,
        GetOrganizationDashboard,
        GetOrgRoles,
        GetOrganizationOwner,
        GetOrgUsers,
        DeleteOrganization,
        CreateOrgCredentials,
        GetOrgCredentials,
        DeleteOrgCredentials,
        AuthenticateClient,
        SetPrimaryDid,
        RegisterOrgWebhook,
        RegisterOrgsMapUsers,
        SendInvitations,
        GetInvitationsByOrg,
        DeleteInvitation,
        UpdateUserRoles,
        SendVerificationMail,
        VerifyEmail,
        CompleteSignup,
        UserLogin,
        RefreshToken,
        ForgotPassword,
        ResetTokenPassword,
        ResetPassword,
        GetUserProfile,
        GetUserPublicProfile,
        UpdateUserProfile,
        GetUserInvitations,
        UpdateInvitationStatus,
        CheckUserExists,
        GetUserActivity,
        GetUserByMail,
        GetUserKeycloakIds,
        GetPlatformSettings,
        UpdatePlatformSettings,
    ],
    Field(discriminator="cmd"),
]

COMMAND_TYPES: tuple[type[BaseModel], ...] = get_args(get_args(RpcCommand)[0])

command_adapter: TypeAdapter = TypeAdapter(RpcCommand)


class RpcError(BaseModel):
    status_code: int
    message: str


class RpcRequest(BaseModel):
    request_id: str
    reply_to: str
    command: RpcCommand


class RpcReply(BaseModel):
    request_id: str
    data: Any = None
    error: Optional[RpcError] = None

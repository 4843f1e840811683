"""
Organization API endpoints.

POST   /api/v1/orgs                                   Create an org (caller becomes owner)
GET    /api/v1/orgs                                   List the caller's orgs
GET    /api/v1/orgs/public-profile                    List public orgs
GET    /api/v1/orgs/public-profiles/{slug}            Public org profile
POST   /api/v1/orgs/register-org-map-users            Register unregistered orgs (platform admin)
POST   /api/v1/orgs/{client_id}/token                 Client-credentials token
GET    /api/v1/orgs/{org_id}                          Org details
PUT    /api/v1/orgs/{org_id}                          Update org
DELETE /api/v1/orgs/{org_id}                          Delete org and everything under it
GET    /api/v1/orgs/{org_id}/dashboard                Member / invitation / DID counts
GET    /api/v1/orgs/{org_id}/roles                    Assignable roles
GET    /api/v1/orgs/{org_id}/owner                    Owner contact
GET    /api/v1/orgs/{org_id}/users                    Members with roles
PUT    /api/v1/orgs/{org_id}/user-roles/{user_id}     Replace a member's roles
POST   /api/v1/orgs/{org_id}/client_credentials       Create / rotate client credentials
GET    /api/v1/orgs/{org_id}/client_credentials       Masked client credentials
DELETE /api/v1/orgs/{org_id}/client_credentials       Remove the identity-provider client
PUT    /api/v1/orgs/{org_id}/primary-did              Set primary DID
POST   /api/v1/orgs/{org_id}/webhook                  Register notification webhook
POST   /api/v1/orgs/{org_id}/invitations              Send invitations
GET    /api/v1/orgs/{org_id}/invitations              List the org's invitations
DELETE /api/v1/orgs/{org_id}/invitations/{inv_id}     Withdraw a pending invitation
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends

from app.api.v1.common import get_rpc, ok, page_query
from app.core.auth import get_principal, require_org_roles, require_platform_admin
from credhub_shared.schemas import commands as c
from credhub_shared.schemas.commands import Principal
from credhub_shared.schemas.common import APIResponse, OrgRoles, PageQuery
from credhub_shared.schemas.organizations import (
    BulkInvitationRequest,
    ClientCredentialsRequest,
    OrgCreateRequest,
    OrgUpdateRequest,
    PrimaryDidRequest,
    UpdateUserRolesRequest,
    WebhookEndpointRequest,
)

log = structlog.get_logger()
router = APIRouter()

MANAGERS = (OrgRoles.OWNER, OrgRoles.ADMIN)
ANY_MEMBER = (OrgRoles.OWNER, OrgRoles.ADMIN, OrgRoles.ISSUER, OrgRoles.VERIFIER, OrgRoles.MEMBER)


# ---------------------------------------------------------------------------
# Non-org-scoped routes
# ---------------------------------------------------------------------------

@router.post("", response_model=APIResponse, status_code=201)
async def create_org(
    body: OrgCreateRequest,
    principal: Principal = Depends(get_principal),
    rpc=Depends(get_rpc),
):
    """Create a new organization. The creator becomes its owner."""
    data = await rpc.send(c.CreateOrganization(req=body, principal=principal))
    return ok("Organization created successfully", data, 201)


@router.get("", response_model=APIResponse)
async def list_orgs(
    page: PageQuery = Depends(page_query),
    principal: Principal = Depends(get_principal),
    rpc=Depends(get_rpc),
):
    """List orgs the authenticated user belongs to, with their roles in each."""
    data = await rpc.send(c.GetOrganizations(principal=principal, page=page))
    return ok("Organizations details fetched successfully", data)


@router.get("/public-profile", response_model=APIResponse)
async def list_public_orgs(page: PageQuery = Depends(page_query), rpc=Depends(get_rpc)):
    data = await rpc.send(c.GetPublicOrganizations(page=page))
    return ok("Organizations details fetched successfully", data)


@router.get("/public-profiles/{slug}", response_model=APIResponse)
async def get_public_profile(slug: str, rpc=Depends(get_rpc)):
    data = await rpc.send(c.GetOrganizationPublicProfile(slug=slug))
    return ok("Organization public profile fetched successfully", data)


@router.post("/register-org-map-users", response_model=APIResponse, status_code=201)
async def register_orgs_map_users(
    _: Principal = Depends(require_platform_admin),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.RegisterOrgsMapUsers())
    return ok("Organization client created and users mapped to client", data, 201)


@router.post("/{client_id}/token", response_model=APIResponse)
async def client_token(client_id: str, body: ClientCredentialsRequest, rpc=Depends(get_rpc)):
    """Exchange organization client credentials for an access token."""
    # The path id wins over a mismatched body id
    data = await rpc.send(c.AuthenticateClient(client_id=client_id, client_secret=body.client_secret))
    return ok("Client token generated successfully", data)


# ---------------------------------------------------------------------------
# Org-scoped routes
# ---------------------------------------------------------------------------

@router.get("/{org_id}", response_model=APIResponse)
async def get_org(
    org_id: uuid.UUID,
    _: Principal = Depends(require_org_roles(*ANY_MEMBER)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetOrganization(org_id=org_id))
    return ok("Organization details fetched successfully", data)


@router.put("/{org_id}", response_model=APIResponse)
async def update_org(
    org_id: uuid.UUID,
    body: OrgUpdateRequest,
    principal: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.UpdateOrganization(org_id=org_id, req=body, principal=principal))
    return ok("Organization updated successfully", data)


@router.delete("/{org_id}", response_model=APIResponse)
async def delete_org(
    org_id: uuid.UUID,
    principal: Principal = Depends(require_org_roles(OrgRoles.OWNER)),
    rpc=Depends(get_rpc),
):
    """Delete the org, its memberships, invitations and DIDs; members are notified."""
    data = await rpc.send(c.DeleteOrganization(org_id=org_id, principal=principal))
    return ok("Organization deleted successfully", data)


@router.get("/{org_id}/dashboard", response_model=APIResponse)
async def get_dashboard(
    org_id: uuid.UUID,
    _: Principal = Depends(require_org_roles(*ANY_MEMBER)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetOrganizationDashboard(org_id=org_id))
    return ok("Organization dashboard details fetched", data)


@router.get("/{org_id}/roles", response_model=APIResponse)
async def get_org_roles(
    org_id: uuid.UUID,
    _: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetOrgRoles(org_id=org_id))
    return ok("Organization roles fetched successfully", data)


@router.get("/{org_id}/owner", response_model=APIResponse)
async def get_owner(
    org_id: uuid.UUID,
    _: Principal = Depends(require_org_roles(*ANY_MEMBER)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetOrganizationOwner(org_id=org_id))
    return ok("Organization owner fetched successfully", data)


@router.get("/{org_id}/users", response_model=APIResponse)
async def get_org_users(
    org_id: uuid.UUID,
    page: PageQuery = Depends(page_query),
    _: Principal = Depends(require_org_roles(*ANY_MEMBER)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetOrgUsers(org_id=org_id, page=page))
    return ok("User details fetched successfully", data)


@router.put("/{org_id}/user-roles/{user_id}", response_model=APIResponse)
async def update_user_roles(
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    body: UpdateUserRolesRequest,
    principal: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(
        c.UpdateUserRoles(org_id=org_id, user_id=user_id, org_role_ids=body.org_role_ids, principal=principal)
    )
    return ok("User roles updated successfully", data)


@router.post("/{org_id}/client_credentials", response_model=APIResponse, status_code=201)
async def create_credentials(
    org_id: uuid.UUID,
    principal: Principal = Depends(require_org_roles(OrgRoles.OWNER)),
    rpc=Depends(get_rpc),
):
    """Returns the client secret in clear text; it is not retrievable afterwards."""
    data = await rpc.send(c.CreateOrgCredentials(org_id=org_id, principal=principal))
    return ok("Organization credentials created successfully", data, 201)


@router.get("/{org_id}/client_credentials", response_model=APIResponse)
async def get_credentials(
    org_id: uuid.UUID,
    _: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetOrgCredentials(org_id=org_id))
    return ok("Organization credentials fetched successfully", data)


@router.delete("/{org_id}/client_credentials", response_model=APIResponse)
async def delete_credentials(
    org_id: uuid.UUID,
    principal: Principal = Depends(require_org_roles(OrgRoles.OWNER)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.DeleteOrgCredentials(org_id=org_id, principal=principal))
    return ok("Organization client credentials deleted", data)


@router.put("/{org_id}/primary-did", response_model=APIResponse)
async def set_primary_did(
    org_id: uuid.UUID,
    body: PrimaryDidRequest,
    _: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.SetPrimaryDid(org_id=org_id, did=body.did))
    return ok("Primary DID updated successfully", data)


@router.post("/{org_id}/webhook", response_model=APIResponse, status_code=201)
async def register_webhook(
    org_id: uuid.UUID,
    body: WebhookEndpointRequest,
    _: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.RegisterOrgWebhook(org_id=org_id, webhook_endpoint=body.webhook_endpoint))
    return ok("Webhook endpoint registered successfully", data, 201)


@router.post("/{org_id}/invitations", response_model=APIResponse, status_code=201)
async def send_invitations(
    org_id: uuid.UUID,
    body: BulkInvitationRequest,
    principal: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.SendInvitations(org_id=org_id, invitations=body.invitations, principal=principal))
    return ok("Organization invitations sent", data, 201)


@router.get("/{org_id}/invitations", response_model=APIResponse)
async def list_invitations(
    org_id: uuid.UUID,
    page: PageQuery = Depends(page_query),
    _: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetInvitationsByOrg(org_id=org_id, page=page))
    return ok("Organization invitations fetched successfully", data)


@router.delete("/{org_id}/invitations/{invitation_id}", response_model=APIResponse)
async def delete_invitation(
    org_id: uuid.UUID,
    invitation_id: uuid.UUID,
    _: Principal = Depends(require_org_roles(*MANAGERS)),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.DeleteInvitation(org_id=org_id, invitation_id=invitation_id))
    return ok("Organization invitation deleted successfully", data)

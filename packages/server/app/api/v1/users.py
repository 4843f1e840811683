"""
User API endpoints.

GET    /api/v1/users/profile                       Caller's profile
PUT    /api/v1/users/profile                       Update caller's profile
GET    /api/v1/users/public-profiles/{username}    Public user profile
GET    /api/v1/users/activity                      Caller's recent activity
GET    /api/v1/users/org-invitations               Invitations addressed to the caller
POST   /api/v1/users/org-invitations/{inv_id}      Accept / reject an invitation
POST   /api/v1/users/password/reset                Change password (old + new)
GET    /api/v1/users/{email}                       Existence check
GET    /api/v1/users/platform-settings             Platform branding (platform admin)
PUT    /api/v1/users/platform-settings             Update platform branding (platform admin)
POST   /api/v1/users/keycloak-ids                  Identity-provider ids by email (platform admin)
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field

from app.api.v1.common import get_rpc, ok, page_query
from app.core.auth import get_principal, require_platform_admin
from app.core.errors import ForbiddenError
from credhub_shared.schemas import commands as c
from credhub_shared.schemas.commands import Principal
from credhub_shared.schemas.common import APIResponse, PageQuery
from credhub_shared.schemas.organizations import InvitationStatus, UpdateInvitationStatusRequest
from credhub_shared.schemas.users import (
    PlatformSettingsRequest,
    ResetPasswordRequest,
    UserProfileUpdateRequest,
)

router = APIRouter()


class KeycloakIdsRequest(BaseModel):
    emails: list[EmailStr] = Field(..., min_length=1)


@router.get("/profile", response_model=APIResponse)
async def get_profile(principal: Principal = Depends(get_principal), rpc=Depends(get_rpc)):
    data = await rpc.send(c.GetUserProfile(user_id=principal.user_id))
    return ok("User profile fetched successfully", data)


@router.put("/profile", response_model=APIResponse)
async def update_profile(
    body: UserProfileUpdateRequest,
    principal: Principal = Depends(get_principal),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.UpdateUserProfile(user_id=principal.user_id, req=body))
    return ok("User profile updated successfully", data)


@router.get("/public-profiles/{username}", response_model=APIResponse)
async def get_public_profile(username: str, rpc=Depends(get_rpc)):
    data = await rpc.send(c.GetUserPublicProfile(username=username))
    return ok("User public profile fetched successfully", data)


@router.get("/activity", response_model=APIResponse)
async def get_activity(
    limit: int = Query(10, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetUserActivity(user_id=principal.user_id, limit=limit))
    return ok("User activities fetched successfully", data)


@router.get("/org-invitations", response_model=APIResponse)
async def get_invitations(
    status: Optional[InvitationStatus] = Query(None),
    page: PageQuery = Depends(page_query),
    principal: Principal = Depends(get_principal),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetUserInvitations(principal=principal, status=status, page=page))
    return ok("Organization invitations fetched successfully", data)


@router.post("/org-invitations/{invitation_id}", response_model=APIResponse, status_code=201)
async def update_invitation_status(
    invitation_id: uuid.UUID,
    body: UpdateInvitationStatusRequest,
    principal: Principal = Depends(get_principal),
    rpc=Depends(get_rpc),
):
    """Accepting binds the invited roles in the organization's identity-provider client."""
    data = await rpc.send(
        c.UpdateInvitationStatus(
            invitation_id=invitation_id,
            org_id=body.org_id,
            status=body.status,
            principal=principal,
        )
    )
    return ok(f"Invitation {body.status.value} successfully", data, 201)


@router.post("/password/reset", response_model=APIResponse)
async def reset_password(
    body: ResetPasswordRequest,
    principal: Principal = Depends(get_principal),
    rpc=Depends(get_rpc),
):
    if body.email != principal.email.lower():
        raise ForbiddenError("You can only change your own password")
    data = await rpc.send(
        c.ResetPassword(email=body.email, old_password=body.old_password, new_password=body.new_password)
    )
    return ok("Password reset successfully", data)


@router.get("/platform-settings", response_model=APIResponse)
async def get_platform_settings(
    _: Principal = Depends(require_platform_admin),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetPlatformSettings())
    return ok("Platform settings fetched successfully", data)


@router.put("/platform-settings", response_model=APIResponse)
async def update_platform_settings(
    body: PlatformSettingsRequest,
    principal: Principal = Depends(require_platform_admin),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.UpdatePlatformSettings(req=body, principal=principal))
    return ok("Platform settings updated successfully", data)


@router.post("/keycloak-ids", response_model=APIResponse)
async def get_keycloak_ids(
    body: KeycloakIdsRequest,
    _: Principal = Depends(require_platform_admin),
    rpc=Depends(get_rpc),
):
    data = await rpc.send(c.GetUserKeycloakIds(emails=[str(email).lower() for email in body.emails]))
    return ok("Identity provider ids fetched successfully", data)


@router.get("/{email}", response_model=APIResponse)
async def check_user_exists(email: EmailStr, rpc=Depends(get_rpc)):
    data = await rpc.send(c.CheckUserExists(email=str(email).lower()))
    return ok("User existence checked", data)

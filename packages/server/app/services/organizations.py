"""
Organization service: org lifecycle, identity-provider client registration,
credentials, primary DID, webhook endpoints and the deletion cascade.
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.keycloak import KeycloakClient
from app.clients.storage import ImageStorage
from app.core.batch import BEST_EFFORT, BatchPolicy, PartialFailure, run_batch
from app.core.config import Settings
from app.core.crypto import mask_secret
from app.core.errors import (
    ConflictError,
    IdentityProviderError,
    NotFoundError,
    OrgLimitError,
    PlatformError,
)
from app.models.activity import OrgDeletionRecord
from app.models.organization import Organization
from app.models.user import User
from app.services.email_notifier import EmailNotifier
from app.services.role_reconciler import RoleReconciler
from app.services.tokens import ManagementTokens
from app.store import activity as activity_store
from app.store import invitations as invitation_store
from app.store import organizations as org_store
from app.store import platform as platform_store
from app.store import roles as role_store
from app.store import users as user_store
from credhub_shared.schemas.commands import Principal
from credhub_shared.schemas.common import (
    STANDARD_CLIENT_ROLES,
    OrgRoles,
    Page,
    PageQuery,
    Pagination,
    RoleRef,
)
from credhub_shared.schemas.organizations import (
    ClientTokenResponse,
    InvitationStatus,
    OrgCreateRequest,
    OrgCredentialsResponse,
    OrgDashboardResponse,
    OrgDeletionResponse,
    OrgListItem,
    OrgOwnerResponse,
    OrgPublicProfile,
    OrgRegistrationRepairResult,
    OrgResponse,
    OrgUpdateRequest,
    OrgUserItem,
    PrimaryDidResponse,
)

log = structlog.get_logger()

# Removal notices never fail the (already committed) deletion
NOTICE_POLICY = BatchPolicy(min_success_count=0, on_partial_failure=PartialFailure.LOG_AND_CONTINUE)

ROLE_DESCRIPTIONS = {
    OrgRoles.OWNER: "Organization owner",
    OrgRoles.ADMIN: "Organization administrator",
    OrgRoles.ISSUER: "Issues credentials on behalf of the organization",
    OrgRoles.VERIFIER: "Verifies credentials on behalf of the organization",
    OrgRoles.MEMBER: "Organization member",
}


def create_org_slug(name: str) -> str:
    """Lowercase, hyphen-separated, limited to [a-z0-9-]; idempotent."""
    slug = name.lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    return re.sub(r"-{2,}", "-", slug)


def did_namespace(did: str) -> Optional[str]:
    """``did:indy:ns:sub:...`` -> ``ns:sub``; ``did:polygon:net:...`` -> ``polygon:net``."""
    parts = did.split(":")
    if len(parts) >= 4 and parts[1] == "indy":
        return f"{parts[2]}:{parts[3]}"
    if len(parts) >= 3 and parts[1] == "polygon":
        return f"{parts[1]}:{parts[2]}"
    return None


class OrganizationService:
    def __init__(
        self,
        settings: Settings,
        keycloak: KeycloakClient,
        tokens: ManagementTokens,
        reconciler: RoleReconciler,
        notifier: EmailNotifier,
        storage: ImageStorage,
    ):
        self._settings = settings
        self._keycloak = keycloak
        self._tokens = tokens
        self._reconciler = reconciler
        self._notifier = notifier
        self._storage = storage

    # --- Create / update ---

    async def create_organization(
        self, session: AsyncSession, req: OrgCreateRequest, principal: Principal
    ) -> OrgResponse:
        creator = await user_store.require_user(session, principal.user_id)
        memberships = await role_store.count_user_memberships(session, creator.id)
        if memberships >= self._settings.max_org_limit:
            raise OrgLimitError("Maximum organization limit reached")

        slug = create_org_slug(req.name)
        if await org_store.get_by_name(session, req.name) or await org_store.get_by_slug(session, slug):
            raise ConflictError("Organization already exists")

        logo_url = None
        if req.logo:
            logo_url = await self._storage.store_data_uri(req.logo, prefix="org-logos")

        org = await org_store.create_organization(
            session,
            Organization(
                name=req.name,
                slug=slug,
                description=req.description,
                logo_url=logo_url,
                website=req.website,
                public_profile=req.public_profile,
                created_by=creator.id,
                last_changed_by=creator.id,
            ),
        )

        owner_role = await self._owner_role_id(session)
        token = await self._tokens.for_principal(session, principal)
        try:
            await self._register_client(session, org, token)
        except IdentityProviderError as exc:
            log.error("org.client_create_failed", org_id=str(org.id), upstream_status=exc.upstream_status)
            raise IdentityProviderError(
                "Unable to create client", upstream_status=exc.upstream_status, endpoint=exc.endpoint
            ) from exc
        await self._reconciler.assign(session, org=org, user=creator, role_ids=[owner_role], token=token)

        if req.webhook_endpoint:
            await org_store.upsert_notification_endpoint(session, org.id, req.webhook_endpoint)

        await activity_store.record_activity(
            session, creator.id, "Organization created", f"Created organization {org.name}", org_id=org.id
        )
        log.info("org.created", org_id=str(org.id), slug=slug, creator=str(creator.id))
        return OrgResponse.model_validate(org)

    async def update_organization(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        req: OrgUpdateRequest,
        principal: Principal,
    ) -> OrgResponse:
        org = await org_store.require_organization(session, org_id)

        if req.name is not None and req.name.strip() != org.name:
            name = req.name.strip()
            slug = create_org_slug(name)
            for existing in (
                await org_store.get_by_name(session, name),
                await org_store.get_by_slug(session, slug),
            ):
                if existing and existing.id != org.id:
                    raise ConflictError("Organization already exists")
            org.name = name
            org.slug = slug

        if req.description is not None:
            org.description = req.description.strip()
        if req.website is not None:
            org.website = req.website
        if req.public_profile is not None:
            org.public_profile = req.public_profile
        if req.logo:
            org.logo_url = await self._storage.store_data_uri(req.logo, prefix="org-logos")

        org.last_changed_by = principal.user_id
        await org_store.save_organization(session, org)
        await activity_store.record_activity(
            session, principal.user_id, "Organization updated", f"Updated organization {org.name}", org_id=org.id
        )
        log.info("org.updated", org_id=str(org.id), slug=org.slug)
        return OrgResponse.model_validate(org)

    # --- Reads ---

    async def get_organization(self, session: AsyncSession, org_id: uuid.UUID) -> OrgResponse:
        org = await org_store.require_organization(session, org_id)
        return OrgResponse.model_validate(org)

    async def get_organizations(
        self, session: AsyncSession, principal: Principal, page: PageQuery
    ) -> Page[OrgListItem]:
        rows, total = await org_store.list_user_organizations(
            session, principal.user_id, page.page_number, page.page_size, page.search
        )
        items = [
            OrgListItem(
                id=org.id,
                name=org.name,
                slug=org.slug,
                description=org.description,
                logo_url=org.logo_url,
                roles=roles,
            )
            for org, roles in rows
        ]
        return Page[OrgListItem](
            items=items, pagination=Pagination.build(page.page_number, page.page_size, total)
        )

    async def get_public_organizations(
        self, session: AsyncSession, page: PageQuery
    ) -> Page[OrgPublicProfile]:
        orgs, total = await org_store.list_public_organizations(
            session, page.page_number, page.page_size, page.search
        )
        return Page[OrgPublicProfile](
            items=[OrgPublicProfile.model_validate(o) for o in orgs],
            pagination=Pagination.build(page.page_number, page.page_size, total),
        )

    async def get_public_profile(self, session: AsyncSession, slug: str) -> OrgPublicProfile:
        org = await org_store.get_by_slug(session, slug)
        if not org or not org.public_profile:
            raise NotFoundError("Organization not found")
        dids = await org_store.list_org_dids(session, org.id)
        profile = OrgPublicProfile.model_validate(org)
        profile.dids = [d.did for d in dids]
        return profile

    async def get_dashboard(self, session: AsyncSession, org_id: uuid.UUID) -> OrgDashboardResponse:
        await org_store.require_organization(session, org_id)
        counts = await org_store.dashboard_counts(session, org_id)
        return OrgDashboardResponse(**counts)

    async def get_org_roles(self, session: AsyncSession, org_id: uuid.UUID) -> list[RoleRef]:
        """Roles assignable in the organization, as catalog ids."""
        org = await org_store.require_organization(session, org_id)
        catalog = await self._reconciler.org_catalog(session)
        if not org.idp_id:
            return catalog
        token = await self._tokens.platform()
        client_role_names = {r.name for r in await self._reconciler.client_roles(org.idp_id, token)}
        return [r for r in catalog if r.name in client_role_names]

    async def get_organization_owner(self, session: AsyncSession, org_id: uuid.UUID) -> OrgOwnerResponse:
        await org_store.require_organization(session, org_id)
        owner = await role_store.get_org_owner(session, org_id)
        if not owner:
            raise NotFoundError("Organization owner not found")
        return OrgOwnerResponse(
            user_id=owner.id, email=owner.email, first_name=owner.first_name, last_name=owner.last_name
        )

    async def get_org_users(
        self, session: AsyncSession, org_id: uuid.UUID, page: PageQuery
    ) -> Page[OrgUserItem]:
        await org_store.require_organization(session, org_id)
        rows, total = await user_store.find_org_users(
            session, org_id, page.page_number, page.page_size, page.search
        )
        items = [
            OrgUserItem(
                id=user.id,
                email=user.email,
                username=user.username,
                first_name=user.first_name,
                last_name=user.last_name,
                roles=roles,
            )
            for user, roles in rows
        ]
        return Page[OrgUserItem](
            items=items, pagination=Pagination.build(page.page_number, page.page_size, total)
        )

    # --- Client credentials ---

    async def create_org_credentials(
        self, session: AsyncSession, org_id: uuid.UUID, principal: Principal
    ) -> OrgCredentialsResponse:
        """Rotate (or first register) the org's client; the cleartext secret is returned once."""
        org = await org_store.require_organization(session, org_id)
        token = await self._tokens.for_principal(session, principal)

        if org.idp_id:
            secret = await self._keycloak.regenerate_client_secret(org.idp_id, token)
            org.client_secret = mask_secret(secret)
            org.last_changed_by = principal.user_id
            await org_store.save_organization(session, org)
        else:
            secret = await self._register_and_remap(session, org, token)

        await activity_store.record_activity(
            session, principal.user_id, "Client credentials created", f"Client credentials for {org.name}", org_id=org.id
        )
        log.info("org.credentials_created", org_id=str(org.id))
        return OrgCredentialsResponse(client_id=org.client_id, client_secret=secret, idp_id=org.idp_id)

    async def get_org_credentials(self, session: AsyncSession, org_id: uuid.UUID) -> OrgCredentialsResponse:
        org = await org_store.require_organization(session, org_id)
        if not org.client_id:
            raise NotFoundError("Client credentials not found")
        return OrgCredentialsResponse(
            client_id=org.client_id, client_secret=org.client_secret or "", idp_id=org.idp_id
        )

    async def delete_org_credentials(
        self, session: AsyncSession, org_id: uuid.UUID, principal: Principal
    ) -> dict:
        org = await org_store.require_organization(session, org_id)
        if not org.idp_id:
            raise NotFoundError("Client credentials not found")
        token = await self._tokens.for_principal(session, principal)
        await self._keycloak.delete_client(org.idp_id, token)
        await self._reconciler.forget_client_roles(org.idp_id)

        org.client_id = None
        org.client_secret = None
        org.idp_id = None
        org.last_changed_by = principal.user_id
        await org_store.save_organization(session, org)
        log.info("org.credentials_deleted", org_id=str(org.id))
        return {"org_id": str(org.id), "deleted": True}

    async def authenticate_client(self, client_id: str, client_secret: str) -> ClientTokenResponse:
        tokens = await self._keycloak.authenticate_client(client_id, client_secret)
        return ClientTokenResponse(
            access_token=tokens.access_token, expires_in=tokens.expires_in, token_type=tokens.token_type
        )

    # --- DIDs + webhook ---

    async def set_primary_did(self, session: AsyncSession, org_id: uuid.UUID, did: str) -> PrimaryDidResponse:
        org = await org_store.require_organization(session, org_id)
        if org.primary_did == did:
            raise ConflictError("DID is already the primary DID")

        dids = await org_store.list_org_dids(session, org.id)
        row = next((d for d in dids if d.did == did), None)
        if row is None:
            raise NotFoundError("DID not found for this organization")
        if row.is_primary_did:
            raise ConflictError("DID is already the primary DID")

        namespace = did_namespace(did)
        await org_store.set_primary_did(session, org, row, namespace)
        log.info("org.primary_did_set", org_id=str(org.id), namespace=namespace)
        return PrimaryDidResponse(org_id=org.id, did=did, did_namespace=namespace)

    async def register_org_webhook(
        self, session: AsyncSession, org_id: uuid.UUID, webhook_endpoint: str
    ) -> dict:
        await org_store.require_organization(session, org_id)
        row = await org_store.upsert_notification_endpoint(session, org_id, webhook_endpoint)
        log.info("org.webhook_registered", org_id=str(org_id))
        return {"org_id": str(org_id), "webhook_endpoint": row.webhook_endpoint}

    # --- Registration repair ---

    async def register_orgs_map_users(self, session: AsyncSession) -> OrgRegistrationRepairResult:
        """Register a client for every organization that has none and remap its members."""
        result = OrgRegistrationRepairResult(registered=[], failed=[])
        orgs = await org_store.list_unregistered_organizations(session)
        if not orgs:
            return result

        token = await self._tokens.platform()
        for org in orgs:
            try:
                async with session.begin_nested():
                    await self._register_and_remap(session, org, token)
            except PlatformError as exc:
                log.error("org.registration_repair_failed", org_id=str(org.id), error=exc.message)
                await session.refresh(org)
                result.failed.append(org.id)
            else:
                result.registered.append(org.id)

        log.info("org.registration_repair", registered=len(result.registered), failed=len(result.failed))
        return result

    async def _owner_role_id(self, session: AsyncSession) -> str:
        for role in await self._reconciler.org_catalog(session):
            if role.name == OrgRoles.OWNER.value:
                return role.id
        raise NotFoundError("Owner role is missing from the role catalog")

    async def _register_client(self, session: AsyncSession, org: Organization, token: str) -> str:
        """Create (or adopt) the org's client and its standard roles; returns the cleartext secret."""
        client_id = str(org.id)
        existing = await self._keycloak.get_client(client_id, token)
        if existing:
            idp_id = existing["id"]
            secret = await self._keycloak.get_client_secret(idp_id, token)
            log.info("org.client_adopted", org_id=client_id, idp_id=idp_id)
        else:
            registration = await self._keycloak.create_client(client_id, org.name, token)
            idp_id, secret = registration.idp_id, registration.client_secret

        for role in STANDARD_CLIENT_ROLES:
            await self._keycloak.create_client_role(idp_id, role.value, ROLE_DESCRIPTIONS[role], token)
        await self._reconciler.forget_client_roles(idp_id)

        org.client_id = client_id
        org.client_secret = mask_secret(secret)
        org.idp_id = idp_id
        await org_store.save_organization(session, org)
        log.info("org.client_registered", org_id=client_id, idp_id=idp_id)
        return secret

    async def _register_and_remap(self, session: AsyncSession, org: Organization, token: str) -> str:
        members = await role_store.org_members(session, org.id)
        current: dict[uuid.UUID, list[str]] = {}
        for member in members:
            rows = await role_store.user_org_roles(session, member.id, org.id)
            current[member.id] = [str(role.id) for _, role in rows]

        secret = await self._register_client(session, org, token)

        for member in members:
            if not member.keycloak_user_id:
                log.warning("org.remap_skipped", org_id=str(org.id), user_id=str(member.id))
                continue
            if current[member.id]:
                await self._reconciler.reassign(
                    session, org=org, user=member, role_ids=current[member.id], token=token
                )
        return secret

    # --- Deletion ---

    async def delete_organization(
        self, session: AsyncSession, org_id: uuid.UUID, principal: Principal
    ) -> OrgDeletionResponse:
        org = await org_store.require_organization(session, org_id)
        org_name, idp_id = org.name, org.idp_id

        invitations = await invitation_store.org_invitations(session, org_id)
        invitee_emails = sorted(
            {
                inv.email
                for inv in invitations
                if inv.status in (InvitationStatus.PENDING.value, InvitationStatus.ACCEPTED.value)
            }
        )
        invitees = await user_store.users_by_emails(session, invitee_emails)
        members = await role_store.org_members(session, org_id)

        affected: dict[uuid.UUID, User] = {u.id: u for u in members}
        affected.update({u.id: u for u in invitees})

        if idp_id:
            bound = [u for u in affected.values() if u.keycloak_user_id]
            if bound:
                token = await self._tokens.for_principal(session, principal)
                await run_batch(
                    [
                        (u.email, self._reconciler.unbind_user(idp_id, u.keycloak_user_id, token))
                        for u in bound
                    ],
                    BEST_EFFORT,
                    operation="org_delete.unbind_roles",
                )

        counts = await org_store.delete_organization_cascade(session, org_id)
        await session.commit()

        await activity_store.record_deletions(
            session,
            [
                OrgDeletionRecord(
                    org_id=org_id,
                    user_id=user.id,
                    deleted_by=principal.user_id,
                    record_type="organisation",
                    user_email=user.email,
                    txn_metadata=counts,
                )
                for user in affected.values()
            ],
        )
        await session.commit()
        log.info("org.deleted", org_id=str(org_id), counts=counts, deleted_by=str(principal.user_id))

        recipients = sorted({u.email for u in affected.values()} | set(invitee_emails))
        config = await platform_store.get_platform_config(session)
        branding = self._notifier.branding(config)
        outcome = await run_batch(
            [
                (email, self._notifier.send_org_removal(to=email, org_name=org_name, branding=branding))
                for email in recipients
            ],
            NOTICE_POLICY,
            operation="org_delete.notify",
        )
        return OrgDeletionResponse(
            org_id=org_id,
            deleted=counts,
            notified=sorted(outcome.succeeded),
            notification_failures=sorted(outcome.failed),
        )

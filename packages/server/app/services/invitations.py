"""
Invitation service: sending, listing, accepting/rejecting and deleting
organization invitations, plus member role updates.

Invitation lifecycle: pending -> accepted | rejected (both terminal).
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import (
    EmailDeliveryError,
    ForbiddenError,
    NotFoundError,
    OrgLimitError,
    ValidationError,
)
from app.models.invitation import OrgInvitation
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
from credhub_shared.schemas.common import Page, PageQuery, Pagination, RoleRef
from credhub_shared.schemas.organizations import (
    INVITATION_TRANSITIONS,
    InvitationBatchResult,
    InvitationItem,
    InvitationResponse,
    InvitationStatus,
)

log = structlog.get_logger()


def can_transition(current: InvitationStatus, target: InvitationStatus) -> bool:
    return target in INVITATION_TRANSITIONS.get(current, [])


def _to_response(
    invitation: OrgInvitation, roles_by_id: dict[str, RoleRef], org_name: Optional[str] = None
) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        org_id=invitation.org_id,
        email=invitation.email,
        status=InvitationStatus(invitation.status),
        roles=[roles_by_id[r] for r in invitation.org_roles if r in roles_by_id],
        created_by=invitation.created_by,
        created_at=invitation.created_at,
        organisation_name=org_name,
    )


class InvitationService:
    def __init__(
        self,
        settings: Settings,
        tokens: ManagementTokens,
        reconciler: RoleReconciler,
        notifier: EmailNotifier,
    ):
        self._settings = settings
        self._tokens = tokens
        self._reconciler = reconciler
        self._notifier = notifier

    async def check_invitation_exists(self, session: AsyncSession, email: str, org_id: uuid.UUID) -> bool:
        return await invitation_store.check_invitation_exists(session, email, org_id)

    async def create_invitations(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        invitations: list[InvitationItem],
        principal: Principal,
    ) -> InvitationBatchResult:
        org = await org_store.require_organization(session, org_id)
        if not principal.is_platform_admin and not await role_store.is_member(session, principal.user_id, org_id):
            raise ForbiddenError("You are not a member of this organization")

        token = await self._tokens.for_principal(session, principal) if org.idp_id else None
        branding = self._notifier.branding(await platform_store.get_platform_config(session))
        result = InvitationBatchResult(sent=[], skipped=[], failed=[])

        # Every item's roles resolve before any row is written or email sent
        planned = []
        for item in invitations:
            email = item.email.lower()
            if (
                email == principal.email.lower()
                or email in (p[0] for p in planned)
                or await invitation_store.check_invitation_exists(session, email, org_id)
            ):
                result.skipped.append(email)
                continue
            matches = await self._reconciler.resolve(session, org, item.org_role_ids, token)
            planned.append((email, matches, await user_store.get_user_by_email(session, email)))

        for email, matches, invitee in planned:
            try:
                async with session.begin_nested():
                    await invitation_store.create_invitation(
                        session, org_id, email, [m.role.id for m in matches], principal.user_id
                    )
                    await self._notifier.send_invitation(
                        to=email,
                        org_name=org.name,
                        roles=[m.role.name for m in matches],
                        first_name=invitee.first_name if invitee else None,
                        is_registered=bool(invitee and invitee.keycloak_user_id),
                        branding=branding,
                    )
            except EmailDeliveryError:
                log.warning("invitation.email_failed", org_id=str(org_id))
                result.failed.append(email)
                continue

            result.sent.append(email)
            await activity_store.record_activity(
                session, principal.user_id, "Invitation sent", f"Invited {email}", org_id=org_id
            )

        if result.failed and not result.sent:
            raise EmailDeliveryError("Invitation emails could not be sent")
        log.info(
            "invitation.batch_sent",
            org_id=str(org_id),
            sent=len(result.sent),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    async def get_invitations_by_org(
        self, session: AsyncSession, org_id: uuid.UUID, page: PageQuery
    ) -> Page[InvitationResponse]:
        await org_store.require_organization(session, org_id)
        rows, total = await invitation_store.list_org_invitations(
            session, org_id, page.page_number, page.page_size, page.search
        )
        roles_by_id = {r.id: r for r in await self._reconciler.catalog(session)}
        return Page[InvitationResponse](
            items=[_to_response(inv, roles_by_id) for inv in rows],
            pagination=Pagination.build(page.page_number, page.page_size, total),
        )

    async def get_user_invitations(
        self,
        session: AsyncSession,
        principal: Principal,
        status: Optional[InvitationStatus],
        page: PageQuery,
    ) -> Page[InvitationResponse]:
        rows, total = await invitation_store.list_user_invitations(
            session,
            principal.email,
            status.value if status else None,
            page.page_number,
            page.page_size,
            page.search,
        )
        roles_by_id = {r.id: r for r in await self._reconciler.catalog(session)}
        return Page[InvitationResponse](
            items=[_to_response(inv, roles_by_id, org_name) for inv, org_name in rows],
            pagination=Pagination.build(page.page_number, page.page_size, total),
        )

    async def update_invitation_status(
        self,
        session: AsyncSession,
        invitation_id: uuid.UUID,
        org_id: uuid.UUID,
        status: InvitationStatus,
        principal: Principal,
    ) -> InvitationResponse:
        invitation = await invitation_store.get_invitation(session, invitation_id)
        if not invitation or invitation.email != principal.email.lower():
            raise NotFoundError("Invitation not found")
        if invitation.org_id != org_id:
            raise NotFoundError("Invalid organization id")
        org = await org_store.require_organization(session, org_id)

        current = InvitationStatus(invitation.status)
        if not can_transition(current, status):
            raise ValidationError(f"Invitation status cannot be updated from {current.value}")

        if status == InvitationStatus.ACCEPTED:
            memberships = await role_store.count_user_memberships(session, principal.user_id)
            if memberships >= self._settings.max_org_limit:
                raise OrgLimitError("Maximum organization limit reached")

            user = await user_store.require_user(session, principal.user_id)
            token = await self._tokens.for_principal(session, principal) if org.idp_id else None
            await self._reconciler.assign(
                session, org=org, user=user, role_ids=invitation.org_roles, token=token
            )

        invitation.status = status.value
        await invitation_store.save_invitation(session, invitation)
        await activity_store.record_activity(
            session,
            principal.user_id,
            f"Invitation {status.value}",
            f"Invitation to {org.name} {status.value}",
            org_id=org.id,
        )
        log.info("invitation.status_updated", invitation_id=str(invitation.id), status=status.value)

        roles_by_id = {r.id: r for r in await self._reconciler.catalog(session)}
        return _to_response(invitation, roles_by_id, org.name)

    async def delete_invitation(self, session: AsyncSession, org_id: uuid.UUID, invitation_id: uuid.UUID) -> dict:
        invitation = await invitation_store.get_invitation(session, invitation_id)
        if not invitation:
            raise NotFoundError("Invitation not found")
        if invitation.org_id != org_id:
            raise ForbiddenError("Invitation does not belong to this organization")
        if invitation.status != InvitationStatus.PENDING.value:
            raise ValidationError("Only pending invitations can be deleted")

        await invitation_store.delete_invitation(session, invitation_id)
        log.info("invitation.deleted", invitation_id=str(invitation_id), org_id=str(org_id))
        return {"invitation_id": str(invitation_id), "deleted": True}

    async def update_user_roles(
        self,
        session: AsyncSession,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        role_ids: list[str],
        principal: Principal,
    ) -> list[str]:
        org = await org_store.require_organization(session, org_id)
        user = await user_store.require_user(session, user_id)
        if not await role_store.is_member(session, user.id, org_id):
            raise NotFoundError("User is not a member of this organization")

        token = await self._tokens.for_principal(session, principal) if org.idp_id else None
        rows = await self._reconciler.reassign(session, org=org, user=user, role_ids=role_ids, token=token)
        await activity_store.record_activity(
            session, principal.user_id, "Roles updated", f"Updated roles of {user.email}", org_id=org_id
        )

        names = {r.id: r.name for r in await self._reconciler.catalog(session)}
        log.info("org.user_roles_updated", org_id=str(org_id), user_id=str(user_id), count=len(rows))
        return sorted(names.get(str(row.org_role_id), "") for row in rows)

"""
Command dispatch: one handler per command type, checked exhaustive at import.

The dispatcher is the only place where workflow errors become wire replies.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import structlog
from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.database import get_session_context
from app.core.errors import PlatformError
from app.rpc.container import Services
from credhub_shared.schemas import commands as c
from credhub_shared.schemas.commands import COMMAND_TYPES, RpcError, RpcReply

log = structlog.get_logger()

Handler = Callable[[Services, AsyncSession, Any], Awaitable[Any]]

HANDLERS: dict[type, Handler] = {
    # Organization service
    c.CreateOrganization: lambda s, db, cmd: s.organizations.create_organization(db, cmd.req, cmd.principal),
    c.UpdateOrganization: lambda s, db, cmd: s.organizations.update_organization(
        db, cmd.org_id, cmd.req, cmd.principal
    ),
    c.GetOrganization: lambda s, db, cmd: s.organizations.get_organization(db, cmd.org_id),
    c.GetOrganizations: lambda s, db, cmd: s.organizations.get_organizations(db, cmd.principal, cmd.page),
    c.GetPublicOrganizations: lambda s, db, cmd: s.organizations.get_public_organizations(db, cmd.page),
    c.GetOrganizationPublicProfile: lambda s, db, cmd: s.organizations.get_public_profile(db, cmd.slug),
    c.GetOrganizationDashboard: lambda s, db, cmd: s.organizations.get_dashboard(db, cmd.org_id),
    c.GetOrgRoles: lambda s, db, cmd: s.organizations.get_org_roles(db, cmd.org_id),
    c.GetOrganizationOwner: lambda s, db, cmd: s.organizations.get_organization_owner(db, cmd.org_id),
    c.GetOrgUsers: lambda s, db, cmd: s.organizations.get_org_users(db, cmd.org_id, cmd.page),
    c.DeleteOrganization: lambda s, db, cmd: s.organizations.delete_organization(db, cmd.org_id, cmd.principal),
    c.CreateOrgCredentials: lambda s, db, cmd: s.organizations.create_org_credentials(
        db, cmd.org_id, cmd.principal
    ),
    c.GetOrgCredentials: lambda s, db, cmd: s.organizations.get_org_credentials(db, cmd.org_id),
    c.DeleteOrgCredentials: lambda s, db, cmd: s.organizations.delete_org_credentials(
        db, cmd.org_id, cmd.principal
    ),
    c.AuthenticateClient: lambda s, db, cmd: s.organizations.authenticate_client(cmd.client_id, cmd.client_secret),
    c.SetPrimaryDid: lambda s, db, cmd: s.organizations.set_primary_did(db, cmd.org_id, cmd.did),
    c.RegisterOrgWebhook: lambda s, db, cmd: s.organizations.register_org_webhook(
        db, cmd.org_id, cmd.webhook_endpoint
    ),
    c.RegisterOrgsMapUsers: lambda s, db, cmd: s.organizations.register_orgs_map_users(db),
    c.SendInvitations: lambda s, db, cmd: s.invitations.create_invitations(
        db, cmd.org_id, cmd.invitations, cmd.principal
    ),
    c.GetInvitationsByOrg: lambda s, db, cmd: s.invitations.get_invitations_by_org(db, cmd.org_id, cmd.page),
    c.DeleteInvitation: lambda s, db, cmd: s.invitations.delete_invitation(db, cmd.org_id, cmd.invitation_id),
    c.UpdateUserRoles: lambda s, db, cmd: s.invitations.update_user_roles(
        db, cmd.org_id, cmd.user_id, cmd.org_role_ids, cmd.principal
    ),
    # User service
    c.SendVerificationMail: lambda s, db, cmd: s.users.send_verification_mail(
        db, cmd.email, cmd.client_id, cmd.client_secret, cmd.platform_name, cmd.brand_logo_url
    ),
    c.VerifyEmail: lambda s, db, cmd: s.users.verify_email(db, cmd.email, cmd.verification_code),
    c.CompleteSignup: lambda s, db, cmd: s.users.complete_signup(
        db, cmd.email, cmd.password, cmd.first_name, cmd.last_name, cmd.is_holder
    ),
    c.UserLogin: lambda s, db, cmd: s.users.login(db, cmd.email, cmd.password),
    c.RefreshToken: lambda s, db, cmd: s.users.refresh_token(cmd.refresh_token),
    c.ForgotPassword: lambda s, db, cmd: s.users.forgot_password(db, cmd.email),
    c.ResetTokenPassword: lambda s, db, cmd: s.users.reset_token_password(db, cmd.email, cmd.token, cmd.password),
    c.ResetPassword: lambda s, db, cmd: s.users.reset_password(db, cmd.email, cmd.old_password, cmd.new_password),
    c.GetUserProfile: lambda s, db, cmd: s.users.get_profile(db, cmd.user_id),
    c.GetUserPublicProfile: lambda s, db, cmd: s.users.get_public_profile(db, cmd.username),
    c.UpdateUserProfile: lambda s, db, cmd: s.users.update_profile(db, cmd.user_id, cmd.req),
    c.GetUserInvitations: lambda s, db, cmd: s.invitations.get_user_invitations(
        db, cmd.principal, cmd.status, cmd.page
    ),
    c.UpdateInvitationStatus: lambda s, db, cmd: s.invitations.update_invitation_status(
        db, cmd.invitation_id, cmd.org_id, cmd.status, cmd.principal
    ),
    c.CheckUserExists: lambda s, db, cmd: s.users.check_user_exists(db, cmd.email),
    c.GetUserActivity: lambda s, db, cmd: s.users.get_user_activity(db, cmd.user_id, cmd.limit),
    c.GetUserByMail: lambda s, db, cmd: s.users.get_user_by_email(db, cmd.email),
    c.GetUserKeycloakIds: lambda s, db, cmd: s.users.get_keycloak_ids(db, cmd.emails),
    c.GetPlatformSettings: lambda s, db, cmd: s.users.get_platform_settings(db),
    c.UpdatePlatformSettings: lambda s, db, cmd: s.users.update_platform_settings(db, cmd.req, cmd.principal),
}


def check_exhaustive(handlers: dict[type, Handler]) -> None:
    missing = [t.__name__ for t in COMMAND_TYPES if t not in handlers]
    unknown = [t.__name__ for t in handlers if t not in COMMAND_TYPES]
    if missing or unknown:
        raise RuntimeError(f"Command handlers out of sync: missing={missing} unknown={unknown}")


check_exhaustive(HANDLERS)


class Dispatcher:
    def __init__(self, services: Services, session_factory: sessionmaker):
        self._services = services
        self._session_factory = session_factory

    @property
    def services(self) -> Services:
        return self._services

    async def handle(self, command: Any) -> Any:
        """Run one command in its own session; raises workflow errors unchanged."""
        handler = HANDLERS[type(command)]
        async with get_session_context(self._session_factory) as session:
            result = await handler(self._services, session, command)
        return to_jsonable_python(result)

    async def reply(self, request_id: str, command: Any) -> RpcReply:
        with structlog.contextvars.bound_contextvars(cmd=command.cmd, request_id=request_id):
            try:
                data = await self.handle(command)
            except PlatformError as exc:
                log.warning("rpc.command_failed", status=exc.status_code, error=exc.message)
                return RpcReply(
                    request_id=request_id,
                    error=RpcError(status_code=exc.status_code, message=exc.message),
                )
            except Exception:
                log.exception("rpc.command_crashed")
                return RpcReply(
                    request_id=request_id,
                    error=RpcError(status_code=500, message="Internal server error"),
                )
            log.info("rpc.command_handled")
            return RpcReply(request_id=request_id, data=data)

"""
User service: signup with email verification, login, token refresh, password
reset, profiles, activity and platform settings.
"""

from __future__ import annotations

import re
import uuid
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.keycloak import KeycloakClient, TokenSet
from app.clients.storage import ImageStorage
from app.core.config import Settings
from app.core.crypto import CredentialCipher
from app.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from app.models.base import as_utc, utcnow
from app.models.user import User
from app.services.email_notifier import RESET_TOKEN_TTL_MINUTES, EmailNotifier
from app.services.tokens import ManagementTokens
from app.store import activity as activity_store
from app.store import platform as platform_store
from app.store import roles as role_store
from app.store import users as user_store
from credhub_shared.schemas.commands import Principal
from credhub_shared.schemas.common import OrgRoles
from credhub_shared.schemas.users import (
    PlatformSettingsRequest,
    PlatformSettingsResponse,
    ResetPasswordResponse,
    SignupResponse,
    TokenResponse,
    UserActivityItem,
    UserExistsResponse,
    UserKeycloakId,
    UserProfileResponse,
    UserProfileUpdateRequest,
    UserPublicProfile,
)

log = structlog.get_logger()

DEFAULT_REALM_ROLE = "mb-user"


def make_username(email: str) -> str:
    """``jane.doe@x.io`` -> ``jane-doe-<first uuid segment>``."""
    local_part = email.split("@", 1)[0]
    return f"{re.sub(r'[^a-zA-Z0-9_]', '-', local_part)}-{str(uuid.uuid4()).split('-')[0]}"


def _token_response(tokens: TokenSet) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        refresh_expires_in=tokens.refresh_expires_in,
        token_type=tokens.token_type,
    )


class UserService:
    def __init__(
        self,
        settings: Settings,
        keycloak: KeycloakClient,
        tokens: ManagementTokens,
        cipher: CredentialCipher,
        notifier: EmailNotifier,
        storage: ImageStorage,
    ):
        self._settings = settings
        self._keycloak = keycloak
        self._tokens = tokens
        self._cipher = cipher
        self._notifier = notifier
        self._storage = storage

    async def _require_by_email(self, session: AsyncSession, email: str) -> User:
        user = await user_store.get_user_by_email(session, email)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def _require_verified(self, session: AsyncSession, email: str) -> User:
        user = await self._require_by_email(session, email)
        if not user.is_email_verified:
            raise ValidationError("Please verify your email first")
        return user

    # --- Signup ---

    async def send_verification_mail(
        self,
        session: AsyncSession,
        email: str,
        client_id: str,
        client_secret: str,
        platform_name: Optional[str] = None,
        brand_logo_url: Optional[str] = None,
    ) -> SignupResponse:
        """Email a verification link; the user row exists only once the email went out."""
        email = email.strip().lower()
        if self._settings.platform_profile_mode == "PROD":
            domain = email.split("@")[-1]
            if domain in self._settings.disallowed_email_domains:
                raise ValidationError("Email domain is not allowed")

        existing = await user_store.get_user_by_email(session, email)
        if existing:
            if existing.is_email_verified:
                raise ConflictError("User already exists")
            raise ConflictError("Verification email has already been sent")

        token = await self._keycloak.get_management_token(client_id, client_secret)
        redirect_url = await self._keycloak.get_client_redirect_url(client_id, token)

        verification_code = str(uuid.uuid4())
        config = await platform_store.get_platform_config(session)
        branding = self._notifier.branding(
            config, platform_name=platform_name, brand_logo_url=brand_logo_url
        )
        await self._notifier.send_verification(
            to=email,
            verification_code=verification_code,
            redirect_url=redirect_url,
            client_id=client_id,
            branding=branding,
        )

        user = await user_store.save_user(
            session,
            User(
                email=email,
                username=make_username(email),
                verification_code=verification_code,
                client_id=self._cipher.seal(client_id),
                client_secret=self._cipher.seal(client_secret),
            ),
        )
        log.info("user.verification_sent", user_id=str(user.id))
        return SignupResponse(user_id=user.id, email=user.email)

    async def verify_email(self, session: AsyncSession, email: str, verification_code: str) -> UserProfileResponse:
        user = await user_store.get_user_by_email(session, email)
        if not user or user.verification_code != verification_code:
            raise UnauthorizedError("Invalid verification link")
        if user.is_email_verified:
            raise ConflictError("Email is already verified")

        user.is_email_verified = True
        await user_store.save_user(session, user)
        log.info("user.email_verified", user_id=str(user.id))
        return UserProfileResponse.model_validate(user)

    async def complete_signup(
        self,
        session: AsyncSession,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        is_holder: bool = False,
    ) -> SignupResponse:
        user = await self._require_verified(session, email)
        if user.keycloak_user_id:
            raise ConflictError("User already exists")

        token = await self._tokens.for_user(user)
        keycloak_user_id = await self._keycloak.create_user(
            email=user.email,
            username=user.username or make_username(user.email),
            first_name=first_name,
            last_name=last_name,
            password=password,
            token=token,
        )
        user.keycloak_user_id = keycloak_user_id
        user.first_name = first_name
        user.last_name = last_name
        await user_store.save_user(session, user)

        if is_holder:
            holder = await role_store.get_role_by_name(session, OrgRoles.HOLDER.value)
            if holder is None:
                raise NotFoundError("Holder role is missing from the role catalog")
            await role_store.add_user_org_roles(session, user.id, None, [(holder.id, None)])

        realm_roles = [r for r in await self._keycloak.get_realm_roles(token) if r.name == DEFAULT_REALM_ROLE]
        if realm_roles:
            await self._keycloak.assign_realm_roles(keycloak_user_id, realm_roles, token)
        else:
            log.warning("user.realm_role_missing", role=DEFAULT_REALM_ROLE)

        await activity_store.record_activity(session, user.id, "Signed up", "Account created")
        log.info("user.signed_up", user_id=str(user.id), holder=is_holder)
        return SignupResponse(user_id=user.id, email=user.email)

    # --- Tokens ---

    def _login_client(self, user: Optional[User]) -> tuple[str, str]:
        credentials = self._tokens.client_credentials(user)
        if credentials is None:
            return (
                self._settings.keycloak_management_client_id,
                self._settings.keycloak_management_client_secret,
            )
        return credentials

    async def login(self, session: AsyncSession, email: str, password: str) -> TokenResponse:
        user = await self._require_verified(session, email)
        if not user.keycloak_user_id:
            raise NotFoundError("User not found")
        client_id, client_secret = self._login_client(user)
        tokens = await self._keycloak.user_token(user.email, password, client_id, client_secret)
        log.info("user.logged_in", user_id=str(user.id))
        return _token_response(tokens)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        client_id, client_secret = self._login_client(None)
        tokens = await self._keycloak.refresh_token(refresh_token, client_id, client_secret)
        return _token_response(tokens)

    # --- Passwords ---

    async def forgot_password(self, session: AsyncSession, email: str) -> dict:
        user = await self._require_verified(session, email)
        token = uuid.uuid4().hex
        await user_store.create_reset_token(
            session, user.id, token, utcnow() + timedelta(minutes=RESET_TOKEN_TTL_MINUTES)
        )
        config = await platform_store.get_platform_config(session)
        await self._notifier.send_password_reset(
            to=user.email, token=token, branding=self._notifier.branding(config)
        )
        log.info("user.password_reset_requested", user_id=str(user.id))
        return {"email": user.email}

    async def reset_token_password(
        self, session: AsyncSession, email: str, token: str, password: str
    ) -> ResetPasswordResponse:
        user = await self._require_verified(session, email)
        reset = await user_store.get_reset_token(session, user.id, token)
        if not reset or as_utc(reset.expires_at) < utcnow():
            raise ValidationError("Invalid or expired password reset link")

        admin_token = await self._tokens.for_user(user)
        if user.keycloak_user_id:
            await self._keycloak.reset_user_password(user.keycloak_user_id, password, admin_token)
        else:
            user.keycloak_user_id = await self._keycloak.create_user(
                email=user.email,
                username=user.username or make_username(user.email),
                first_name=user.first_name or "",
                last_name=user.last_name or "",
                password=password,
                token=admin_token,
            )
            await user_store.save_user(session, user)

        await user_store.delete_reset_token(session, reset.id)
        log.info("user.password_reset", user_id=str(user.id))
        return ResetPasswordResponse(id=user.id, email=user.email)

    async def reset_password(
        self, session: AsyncSession, email: str, old_password: str, new_password: str
    ) -> ResetPasswordResponse:
        if old_password == new_password:
            raise ValidationError("New password must differ from the old password")
        user = await self._require_verified(session, email)
        if not user.keycloak_user_id:
            raise NotFoundError("User not found")

        client_id, client_secret = self._login_client(user)
        await self._keycloak.user_token(user.email, old_password, client_id, client_secret)

        admin_token = await self._tokens.for_user(user)
        await self._keycloak.reset_user_password(user.keycloak_user_id, new_password, admin_token)
        await activity_store.record_activity(session, user.id, "Password changed", "Password reset by user")
        log.info("user.password_changed", user_id=str(user.id))
        return ResetPasswordResponse(id=user.id, email=user.email)

    # --- Profiles ---

    async def get_profile(self, session: AsyncSession, user_id: uuid.UUID) -> UserProfileResponse:
        user = await user_store.require_user(session, user_id)
        return UserProfileResponse.model_validate(user)

    async def get_public_profile(self, session: AsyncSession, username: str) -> UserPublicProfile:
        user = await user_store.get_user_by_username(session, username)
        if not user or not user.public_profile:
            raise NotFoundError("User not found")
        return UserPublicProfile.model_validate(user)

    async def update_profile(
        self, session: AsyncSession, user_id: uuid.UUID, req: UserProfileUpdateRequest
    ) -> UserProfileResponse:
        user = await user_store.require_user(session, user_id)
        if req.first_name is not None:
            user.first_name = req.first_name
        if req.last_name is not None:
            user.last_name = req.last_name
        if req.public_profile is not None:
            user.public_profile = req.public_profile
        if req.profile_img is not None:
            if req.profile_img.startswith("data:"):
                user.profile_img = await self._storage.store_data_uri(req.profile_img, prefix="profile-images")
            else:
                user.profile_img = req.profile_img

        await user_store.save_user(session, user)
        await activity_store.record_activity(session, user.id, "Profile updated", "Profile details updated")
        return UserProfileResponse.model_validate(user)

    async def get_user_activity(
        self, session: AsyncSession, user_id: uuid.UUID, limit: int = 10
    ) -> list[UserActivityItem]:
        rows = await activity_store.list_user_activity(session, user_id, limit)
        return [UserActivityItem.model_validate(r) for r in rows]

    async def check_user_exists(self, session: AsyncSession, email: str) -> UserExistsResponse:
        user = await user_store.get_user_by_email(session, email)
        if not user:
            return UserExistsResponse(exists=False)
        return UserExistsResponse(
            exists=True,
            is_email_verified=user.is_email_verified,
            is_registered=bool(user.keycloak_user_id),
        )

    async def get_user_by_email(self, session: AsyncSession, email: str) -> UserProfileResponse:
        user = await self._require_by_email(session, email)
        return UserProfileResponse.model_validate(user)

    async def get_keycloak_ids(self, session: AsyncSession, emails: list[str]) -> list[UserKeycloakId]:
        found = {u.email: u.keycloak_user_id for u in await user_store.users_by_emails(session, emails)}
        return [
            UserKeycloakId(email=e.strip().lower(), keycloak_user_id=found.get(e.strip().lower()))
            for e in emails
        ]

    # --- Platform settings ---

    async def get_platform_settings(self, session: AsyncSession) -> PlatformSettingsResponse:
        config = await platform_store.get_platform_config(session)
        if config:
            return PlatformSettingsResponse.model_validate(config)
        return PlatformSettingsResponse(
            email_from=self._settings.email_from,
            platform_name=self._settings.platform_name,
            brand_logo_url=self._settings.brand_logo_url or None,
            support_email=self._settings.support_email,
        )

    async def update_platform_settings(
        self, session: AsyncSession, req: PlatformSettingsRequest, principal: Principal
    ) -> PlatformSettingsResponse:
        if not principal.is_platform_admin:
            raise ForbiddenError("Only platform administrators can update platform settings")
        config = await platform_store.upsert_platform_config(session, **req.model_dump(exclude_unset=True))
        log.info("platform.settings_updated", updated_by=str(principal.user_id))
        return PlatformSettingsResponse.model_validate(config)

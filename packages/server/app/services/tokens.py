"""
Management token selection for identity-provider admin calls.

Platform admins act through the platform management client from settings.
Everyone else acts through the client credentials stored (sealed) on their
user row; callers without stored credentials fall back to the platform client.
"""

from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.keycloak import KeycloakClient
from app.core.crypto import CredentialCipher
from app.models.user import User
from app.store import users as user_store
from credhub_shared.schemas.commands import Principal

log = structlog.get_logger()


class ManagementTokens:
    def __init__(self, keycloak: KeycloakClient, cipher: CredentialCipher):
        self._keycloak = keycloak
        self._cipher = cipher

    async def platform(self) -> str:
        return await self._keycloak.get_platform_token()

    async def for_principal(self, session: AsyncSession, principal: Optional[Principal]) -> str:
        if principal is None or principal.is_platform_admin:
            return await self.platform()

        user = await user_store.get_user(session, principal.user_id)
        return await self.for_user(user)

    async def for_user(self, user: Optional[User]) -> str:
        credentials = self.client_credentials(user)
        if credentials is None:
            log.info("tokens.platform_client_fallback", user_id=str(user.id) if user else None)
            return await self.platform()
        return await self._keycloak.get_management_token(*credentials)

    def client_credentials(self, user: Optional[User]) -> Optional[tuple[str, str]]:
        """The (client_id, client_secret) the user signed up through, opened."""
        if user is None or not user.client_id or not user.client_secret:
            return None
        return self._cipher.open(user.client_id), self._cipher.open(user.client_secret)

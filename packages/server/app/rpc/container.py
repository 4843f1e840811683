"""Composition root for the backend workflows."""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from app.clients.keycloak import KeycloakClient
from app.clients.mailer import Mailer
from app.clients.storage import ImageStorage
from app.core.cache import ReadCache
from app.core.config import Settings
from app.core.crypto import CredentialCipher
from app.services.email_notifier import EmailNotifier
from app.services.invitations import InvitationService
from app.services.organizations import OrganizationService
from app.services.role_reconciler import RoleReconciler
from app.services.tokens import ManagementTokens
from app.services.users import UserService


class Services:
    """The workflow objects a worker dispatches to, sharing one set of clients."""

    def __init__(
        self,
        settings: Settings,
        keycloak: KeycloakClient,
        mailer: Mailer,
        storage: ImageStorage,
        cache: ReadCache,
        cipher: CredentialCipher,
    ):
        self.settings = settings
        self.keycloak = keycloak
        self.mailer = mailer

        tokens = ManagementTokens(keycloak, cipher)
        reconciler = RoleReconciler(keycloak, cache)
        notifier = EmailNotifier(settings, mailer)

        self.organizations = OrganizationService(settings, keycloak, tokens, reconciler, notifier, storage)
        self.invitations = InvitationService(settings, tokens, reconciler, notifier)
        self.users = UserService(settings, keycloak, tokens, cipher, notifier, storage)

    async def close(self) -> None:
        await self.keycloak.close()
        await self.mailer.close()


def build_services(settings: Settings, redis_client: Optional[redis.Redis] = None) -> Services:
    return Services(
        settings,
        keycloak=KeycloakClient(settings),
        mailer=Mailer(settings),
        storage=ImageStorage(settings),
        cache=ReadCache(redis_client, settings.cache_ttl_seconds),
        cipher=CredentialCipher(settings.crypto_key),
    )


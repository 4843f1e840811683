"""
Shared fixtures: in-memory SQLite per test, seeded role catalog, mocked
identity provider / mail / storage clients, and row factories.
"""

from __future__ import annotations

import os

# Must be set before app.core.database builds its module-level engine
os.environ.setdefault("CH_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CH_EMAIL_API_KEY", "test-key")
os.environ.setdefault("CH_KEYCLOAK_MANAGEMENT_CLIENT_ID", "platform-admin-client")
os.environ.setdefault("CH_KEYCLOAK_MANAGEMENT_CLIENT_SECRET", "platform-admin-secret")

import uuid
from typing import Optional
from unittest.mock import MagicMock

import pytest
from cryptography.fernet import Fernet

from app.clients.keycloak import ClientRegistration, IdpRole, KeycloakClient, TokenSet
from app.clients.mailer import Mailer
from app.clients.storage import ImageStorage
from app.core.cache import ReadCache
from app.core.config import Settings
from app.core.crypto import CredentialCipher
from app.core.database import build_engine, build_session_factory, init_db
from app.models.organization import Organization, OrgDid
from app.models.role import UserOrgRole
from app.models.user import User
from app.rpc.container import Services
from app.scripts.seed_platform import CATALOG_DESCRIPTIONS
from app.store import roles as role_store
from credhub_shared.schemas.commands import Principal
from credhub_shared.schemas.common import STANDARD_CLIENT_ROLES, OrgRoles


def idp_role(name: str) -> IdpRole:
    return IdpRole(id=f"kc-{name}", name=name)


STANDARD_IDP_ROLES = [idp_role(r.value) for r in STANDARD_CLIENT_ROLES]


# ---------------------------------------------------------------------------
# Settings + database
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        email_api_key="test-key",
        keycloak_management_client_id="platform-admin-client",
        keycloak_management_client_secret="platform-admin-secret",
        crypto_key=Fernet.generate_key().decode(),
        max_org_limit=3,
        cache_ttl_seconds=0,
        front_end_url="https://app.example.com",
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        for role in OrgRoles:
            await role_store.ensure_role(session, role.value, CATALOG_DESCRIPTIONS[role])
        await session.commit()
        yield session


# ---------------------------------------------------------------------------
# External clients
# ---------------------------------------------------------------------------

@pytest.fixture
def keycloak():
    kc = MagicMock(spec=KeycloakClient)
    kc.get_platform_token.return_value = "platform-token"
    kc.get_management_token.return_value = "user-client-token"
    kc.get_client.return_value = None
    kc.create_client.side_effect = lambda org_id, name, token: ClientRegistration(
        idp_id=f"idp-{org_id[:8]}", client_id=org_id, client_secret="generated-secret-0123456789"
    )
    kc.get_client_roles.return_value = list(STANDARD_IDP_ROLES)
    kc.get_user_client_roles.return_value = []
    kc.regenerate_client_secret.return_value = "rotated-secret-abcdefghijk"
    kc.get_client_redirect_url.return_value = "https://wallet.example.com/"
    kc.create_user.return_value = "kc-new-user"
    kc.get_realm_roles.return_value = [IdpRole(id="realm-1", name="mb-user")]
    kc.user_token.return_value = TokenSet(access_token="access", refresh_token="refresh", expires_in=300)
    kc.refresh_token.return_value = TokenSet(access_token="access-2", refresh_token="refresh-2", expires_in=300)
    kc.authenticate_client.return_value = TokenSet(access_token="client-access", expires_in=300)
    return kc


@pytest.fixture
def mailer():
    m = MagicMock(spec=Mailer)
    m.send.return_value = "msg-1"
    return m


@pytest.fixture
def storage():
    s = MagicMock(spec=ImageStorage)
    s.store_data_uri.return_value = "https://assets.example.com/org-logos/logo.png"
    return s


@pytest.fixture
def cipher(settings):
    return CredentialCipher(settings.crypto_key)


@pytest.fixture
def services(settings, keycloak, mailer, storage, cipher):
    return Services(
        settings,
        keycloak=keycloak,
        mailer=mailer,
        storage=storage,
        cache=ReadCache(None, 0),
        cipher=cipher,
    )


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

class Factory:
    def __init__(self, session, cipher: CredentialCipher):
        self.session = session
        self.cipher = cipher

    async def user(
        self,
        email: str,
        *,
        keycloak_user_id: Optional[str] = "auto",
        verified: bool = True,
        with_client: bool = True,
    ) -> User:
        user = User(
            email=email,
            username=email.split("@")[0],
            first_name=email.split("@")[0].title(),
            is_email_verified=verified,
            keycloak_user_id=f"kc-{email.split('@')[0]}" if keycloak_user_id == "auto" else keycloak_user_id,
        )
        if with_client:
            user.client_id = self.cipher.seal("wallet-client")
            user.client_secret = self.cipher.seal("wallet-secret")
        self.session.add(user)
        await self.session.flush()
        return user

    async def org(self, name: str, *, idp_id: Optional[str] = None, public: bool = False) -> Organization:
        org = Organization(
            name=name,
            slug=name.lower().replace(" ", "-"),
            public_profile=public,
            idp_id=idp_id,
            client_id=str(uuid.uuid4()) if idp_id else None,
            client_secret="********secret12" if idp_id else None,
        )
        self.session.add(org)
        await self.session.flush()
        return org

    async def grant(self, user: User, org: Optional[Organization], role: OrgRoles) -> UserOrgRole:
        catalog_role = await role_store.get_role_by_name(self.session, role.value)
        idp_role_id = f"kc-{role.value}" if org is not None and org.idp_id else None
        rows = await role_store.add_user_org_roles(
            self.session, user.id, org.id if org else None, [(catalog_role.id, idp_role_id)]
        )
        return rows[0]

    async def did(self, org: Organization, did: str, *, primary: bool = False) -> OrgDid:
        row = OrgDid(org_id=org.id, did=did, is_primary_did=primary)
        if primary:
            org.primary_did = did
            self.session.add(org)
        self.session.add(row)
        await self.session.flush()
        return row

    async def role_id(self, role: OrgRoles) -> str:
        return str((await role_store.get_role_by_name(self.session, role.value)).id)


@pytest.fixture
def factory(session, cipher):
    return Factory(session, cipher)


def principal_for(user: User, *, platform_admin: bool = False, org_roles: Optional[dict] = None) -> Principal:
    return Principal(
        user_id=user.id,
        email=user.email,
        keycloak_user_id=user.keycloak_user_id,
        is_platform_admin=platform_admin,
        org_roles=org_roles or {},
    )


@pytest.fixture
def make_principal():
    return principal_for

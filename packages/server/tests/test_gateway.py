"""
HTTP gateway tests.

Tests cover:
- Liveness and API root
- Success and error envelopes, request validation as 400
- Org-scoped role checks and platform-admin routes
- Bearer token verification and principal resolution
"""

from __future__ import annotations

import time
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

from app.core.auth import TokenVerifier, build_principal, get_principal
from app.core.errors import NotFoundError, UnauthorizedError
from app.main import create_app
from credhub_shared.schemas import commands as c
from credhub_shared.schemas.commands import Principal
from credhub_shared.schemas.common import OrgRoles

ORG_ID = uuid.UUID("5f0c6a53-3b7e-4a55-9d1e-0c2a8f4b7e11")


def _principal(**kwargs) -> Principal:
    defaults = {"user_id": uuid.uuid4(), "email": "u1@example.com", "keycloak_user_id": "kc-u1"}
    return Principal(**{**defaults, **kwargs})


@pytest.fixture
def rpc():
    stub = MagicMock()
    stub.send = AsyncMock(return_value={"id": str(ORG_ID), "name": "Acme"})
    stub.close = AsyncMock()
    return stub


@pytest.fixture
def gateway(settings, rpc):
    app = create_app(settings)
    app.state.rpc = rpc
    return app


@pytest.fixture
async def client(gateway):
    async with AsyncClient(transport=ASGITransport(app=gateway), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def login_as(gateway):
    def _login(principal: Principal) -> Principal:
        gateway.dependency_overrides[get_principal] = lambda: principal
        return principal

    return _login


class TestSystemRoutes:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_api_root(self, client):
        response = await client.get("/api/v1/")
        assert response.status_code == 200
        assert response.json()["api"] == "v1"

    async def test_request_id_and_security_headers(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestEnvelopes:
    async def test_success_envelope(self, client, rpc, login_as):
        login_as(_principal(org_roles={str(ORG_ID): ["member"]}))

        response = await client.get(f"/api/v1/orgs/{ORG_ID}")

        assert response.status_code == 200
        body = response.json()
        assert body["statusCode"] == 200
        assert body["message"] == "Organization details fetched successfully"
        assert body["data"]["name"] == "Acme"
        command = rpc.send.await_args.args[0]
        assert isinstance(command, c.GetOrganization)
        assert command.org_id == ORG_ID

    async def test_workflow_error_envelope(self, client, rpc, login_as):
        login_as(_principal(org_roles={str(ORG_ID): ["owner"]}))
        rpc.send.side_effect = NotFoundError("Organization not found")

        response = await client.get(f"/api/v1/orgs/{ORG_ID}")

        assert response.status_code == 404
        assert response.json() == {"statusCode": 404, "message": "Organization not found", "error": "Not Found"}

    async def test_validation_is_400(self, client, rpc, login_as):
        login_as(_principal())

        response = await client.post("/api/v1/orgs", json={"name": "x"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Bad Request"
        assert body["message"].startswith("name:")
        rpc.send.assert_not_awaited()

    async def test_created_status(self, client, rpc, login_as):
        principal = login_as(_principal())

        response = await client.post("/api/v1/orgs", json={"name": "Acme Corp"})

        assert response.status_code == 201
        assert response.json()["statusCode"] == 201
        command = rpc.send.await_args.args[0]
        assert command.principal == principal
        assert command.req.name == "Acme Corp"


class TestOrgRoleChecks:
    async def test_non_member_forbidden(self, client, rpc, login_as):
        login_as(_principal(org_roles={str(uuid.uuid4()): ["owner"]}))

        response = await client.get(f"/api/v1/orgs/{ORG_ID}")

        assert response.status_code == 403
        assert response.json()["message"] == "You are not a member of this organization"
        rpc.send.assert_not_awaited()

    async def test_insufficient_role(self, client, rpc, login_as):
        login_as(_principal(org_roles={str(ORG_ID): ["admin"]}))

        response = await client.delete(f"/api/v1/orgs/{ORG_ID}")

        assert response.status_code == 403
        assert response.json()["message"] == "Insufficient role for this organization"

    async def test_owner_may_delete(self, client, rpc, login_as):
        login_as(_principal(org_roles={str(ORG_ID): ["owner"]}))

        response = await client.delete(f"/api/v1/orgs/{ORG_ID}")

        assert response.status_code == 200
        assert isinstance(rpc.send.await_args.args[0], c.DeleteOrganization)

    async def test_platform_admin_bypasses_membership(self, client, rpc, login_as):
        login_as(_principal(is_platform_admin=True))

        response = await client.get(f"/api/v1/orgs/{ORG_ID}/client_credentials")

        assert response.status_code == 200

    async def test_platform_admin_route(self, client, rpc, login_as):
        login_as(_principal())
        assert (await client.post("/api/v1/orgs/register-org-map-users")).status_code == 403

        login_as(_principal(is_platform_admin=True))
        response = await client.post("/api/v1/orgs/register-org-map-users")
        assert response.status_code == 201
        assert isinstance(rpc.send.await_args.args[0], c.RegisterOrgsMapUsers)


class TestUserRoutes:
    async def test_password_change_for_self_only(self, client, rpc, login_as):
        login_as(_principal(email="u1@example.com"))

        response = await client.post(
            "/api/v1/users/password/reset",
            json={"email": "other@example.com", "old_password": "old", "new_password": "N3w!password"},
        )

        assert response.status_code == 403
        rpc.send.assert_not_awaited()

    async def test_existence_check_needs_no_token(self, client, rpc):
        rpc.send.return_value = {"exists": False}

        response = await client.get("/api/v1/users/nobody@example.com")

        assert response.status_code == 200
        assert rpc.send.await_args.args[0].email == "nobody@example.com"

    async def test_missing_bearer_is_401(self, client):
        response = await client.get("/api/v1/users/profile")

        assert response.status_code == 401
        assert response.json()["message"] == "Authentication required"


class TestAuthRoutes:
    async def test_signin_forwards_command(self, client, rpc):
        rpc.send.return_value = {"access_token": "a", "expires_in": 300}

        response = await client.post("/api/v1/auth/signin", json={"email": "U1@Example.com", "password": "pw"})

        assert response.status_code == 200
        command = rpc.send.await_args.args[0]
        assert isinstance(command, c.UserLogin)
        assert command.email == "u1@example.com"

    async def test_signin_unauthorized(self, client, rpc):
        rpc.send.side_effect = UnauthorizedError("Invalid credentials")

        response = await client.post("/api/v1/auth/signin", json={"email": "u1@example.com", "password": "pw"})

        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"


class TestTokenVerifier:
    @pytest.fixture
    def keypair(self):
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)

    def _verifier(self, settings, keypair) -> TokenVerifier:
        verifier = TokenVerifier(settings)
        verifier._jwks = MagicMock()
        verifier._jwks.get_signing_key_from_jwt.return_value = SimpleNamespace(key=keypair.public_key())
        return verifier

    async def test_valid_token(self, settings, keypair):
        token = jwt.encode(
            {"sub": "kc-u1", "aud": "account", "exp": int(time.time()) + 60}, keypair, algorithm="RS256"
        )

        claims = await self._verifier(settings, keypair).verify(token)

        assert claims["sub"] == "kc-u1"

    async def test_expired_token(self, settings, keypair):
        token = jwt.encode(
            {"sub": "kc-u1", "aud": "account", "exp": int(time.time()) - 60}, keypair, algorithm="RS256"
        )

        with pytest.raises(UnauthorizedError, match="Invalid or expired token"):
            await self._verifier(settings, keypair).verify(token)

    async def test_wrong_audience(self, settings, keypair):
        token = jwt.encode(
            {"sub": "kc-u1", "aud": "someone-else", "exp": int(time.time()) + 60}, keypair, algorithm="RS256"
        )

        with pytest.raises(UnauthorizedError):
            await self._verifier(settings, keypair).verify(token)


class TestBuildPrincipal:
    async def test_roles_per_org_and_admin_flag(self, factory, session):
        user = await factory.user("admin@example.com")
        acme = await factory.org("Acme")
        await factory.grant(user, acme, OrgRoles.OWNER)
        await factory.grant(user, acme, OrgRoles.ADMIN)
        await factory.grant(user, None, OrgRoles.PLATFORM_ADMIN)

        principal = await build_principal(session, "kc-admin")

        assert principal.is_platform_admin
        assert principal.roles_in(acme.id) == ["admin", "owner"]

    async def test_holder_is_not_admin(self, factory, session):
        user = await factory.user("holder@example.com")
        await factory.grant(user, None, OrgRoles.HOLDER)

        principal = await build_principal(session, "kc-holder")

        assert not principal.is_platform_admin
        assert principal.org_roles == {}

    async def test_unknown_subject(self, session):
        with pytest.raises(UnauthorizedError, match="User not found"):
            await build_principal(session, "kc-nobody")

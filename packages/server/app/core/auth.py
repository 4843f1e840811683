"""
Authentication and authorization for the HTTP gateway.

Supports:
- Bearer access tokens issued by the Keycloak realm, verified against its JWKS
- Principal resolution: token subject -> local user -> role rows per org
- Role-based authorization dependencies scoped to the ``org_id`` path parameter
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_session
from app.core.errors import ForbiddenError, UnauthorizedError
from app.store import roles as role_store
from app.store import users as user_store
from credhub_shared.schemas.commands import Principal
from credhub_shared.schemas.common import OrgRoles

log = structlog.get_logger()

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------

class TokenVerifier:
    """Verifies realm-signed JWTs; signing keys are fetched and cached by kid."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._jwks = jwt.PyJWKClient(settings.keycloak_jwks_url, cache_keys=True)

    async def verify(self, token: str) -> dict:
        try:
            # PyJWKClient fetches over blocking urllib
            signing_key = await asyncio.to_thread(self._jwks.get_signing_key_from_jwt, token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=self._settings.jwt_algorithms,
                audience=self._settings.jwt_audience,
            )
        except jwt.PyJWTError as exc:
            log.info("auth.token_rejected", error=str(exc))
            raise UnauthorizedError("Invalid or expired token") from exc


_verifier: Optional[TokenVerifier] = None


def get_token_verifier() -> TokenVerifier:
    global _verifier
    if _verifier is None:
        _verifier = TokenVerifier(get_settings())
    return _verifier


# ---------------------------------------------------------------------------
# Principal resolution
# ---------------------------------------------------------------------------

async def build_principal(session: AsyncSession, keycloak_user_id: str) -> Principal:
    user = await user_store.get_user_by_keycloak_id(session, keycloak_user_id)
    if user is None:
        raise UnauthorizedError("User not found")

    org_roles: dict[str, list[str]] = {}
    is_platform_admin = False
    for org_id, name in await role_store.role_names_by_org(session, user.id):
        if org_id is None:
            is_platform_admin = is_platform_admin or name == OrgRoles.PLATFORM_ADMIN.value
            continue
        org_roles.setdefault(str(org_id), []).append(name)

    return Principal(
        user_id=user.id,
        email=user.email,
        keycloak_user_id=user.keycloak_user_id,
        is_platform_admin=is_platform_admin,
        org_roles={org_id: sorted(names) for org_id, names in org_roles.items()},
    )


async def get_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    verifier: TokenVerifier = Depends(get_token_verifier),
    session: AsyncSession = Depends(get_session),
) -> Principal:
    """Main authentication dependency: bearer token -> ``Principal``."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedError("Authentication required")

    claims = await verifier.verify(credentials.credentials)
    subject = claims.get("sub")
    if not subject:
        raise UnauthorizedError("Invalid or expired token")

    principal = await build_principal(session, subject)
    request.state.principal = principal
    structlog.contextvars.bind_contextvars(user_id=str(principal.user_id))
    return principal


# ---------------------------------------------------------------------------
# Authorization dependencies (role checks)
# ---------------------------------------------------------------------------

def require_org_roles(*roles: OrgRoles):
    """Caller must hold one of ``roles`` in the path's ``org_id``; platform admins pass."""
    allowed = {role.value for role in roles}

    async def dependency(org_id: uuid.UUID, principal: Principal = Depends(get_principal)) -> Principal:
        if principal.is_platform_admin:
            return principal
        held = principal.roles_in(org_id)
        if not held:
            raise ForbiddenError("You are not a member of this organization")
        if allowed and not allowed.intersection(held):
            raise ForbiddenError("Insufficient role for this organization")
        return principal

    return dependency


async def require_platform_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_platform_admin:
        raise ForbiddenError("Platform administrator access required")
    return principal

"""
Role reconciliation between platform ``UserOrgRole`` rows and identity-provider
client role bindings.

Requested roles are platform catalog ids. Each one resolves to a catalog name
and then to the organization's client role of the same name. Assignment binds
the external roles first and writes the local rows second; a failed local
write is retried once and then compensated by removing the external binding.
"""

from __future__ import annotations

import uuid
from typing import NamedTuple, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.keycloak import IdpRole, KeycloakClient
from app.core.cache import ReadCache
from app.core.errors import (
    ConflictError,
    IdentityProviderError,
    ReconciliationError,
    RoleNotFoundError,
    StorageError,
    ValidationError,
)
from app.models.organization import Organization
from app.models.role import UserOrgRole
from app.models.user import User
from app.store import roles as role_store
from credhub_shared.schemas.common import PLATFORM_LEVEL_ROLES, RoleRef

log = structlog.get_logger()

CATALOG_CACHE_KEY = "org_roles"
LOCAL_WRITE_ATTEMPTS = 2

_PLATFORM_LEVEL_NAMES = {r.value for r in PLATFORM_LEVEL_ROLES}


class RoleMatch(NamedTuple):
    role: RoleRef
    idp_role: Optional[IdpRole]


def match_roles(
    requested_ids: Sequence[str],
    catalog: list[RoleRef],
    client_roles: Optional[list[IdpRole]],
) -> list[RoleMatch]:
    """Join requested catalog ids to client roles by name.

    ``client_roles`` is None for organizations without an identity-provider
    client; the catalog alone is used then. Raises ``RoleNotFoundError`` when
    the number of matches differs from the number of requested ids.
    """
    requested = [str(role_id) for role_id in requested_ids]
    wanted = set(requested)
    hits = [role for role in catalog if role.id in wanted]

    if client_roles is None:
        matches = [RoleMatch(role, None) for role in hits]
    else:
        by_name: dict[str, IdpRole] = {}
        for idp_role in client_roles:
            if idp_role.name in by_name:
                # First match wins
                log.warning(
                    "role_sync.duplicate_role_name",
                    name=idp_role.name,
                    kept=by_name[idp_role.name].id,
                    ignored=idp_role.id,
                )
                continue
            by_name[idp_role.name] = idp_role
        matches = [RoleMatch(role, by_name[role.name]) for role in hits if role.name in by_name]

    if len(matches) != len(requested):
        log.warning("role_sync.role_mismatch", requested=len(requested), matched=len(matches))
        raise RoleNotFoundError("One or more roles could not be found")
    return matches


class RoleReconciler:
    def __init__(self, keycloak: KeycloakClient, cache: ReadCache):
        self._keycloak = keycloak
        self._cache = cache

    # --- Lookups ---

    async def catalog(self, session: AsyncSession) -> list[RoleRef]:
        cached = await self._cache.get_json(CATALOG_CACHE_KEY)
        if cached:
            return [RoleRef.model_validate(r) for r in cached]
        roles = [
            RoleRef(id=str(r.id), name=r.name, description=r.description)
            for r in await role_store.list_org_roles(session)
        ]
        await self._cache.set_json(CATALOG_CACHE_KEY, [r.model_dump() for r in roles])
        return roles

    async def org_catalog(self, session: AsyncSession) -> list[RoleRef]:
        """Catalog roles that can be held inside an organization."""
        return [r for r in await self.catalog(session) if r.name not in _PLATFORM_LEVEL_NAMES]

    async def client_roles(self, idp_id: str, token: str) -> list[IdpRole]:
        key = f"client_roles:{idp_id}"
        cached = await self._cache.get_json(key)
        if cached:
            return [IdpRole.model_validate(r) for r in cached]
        roles = await self._keycloak.get_client_roles(idp_id, token)
        await self._cache.set_json(key, [r.model_dump() for r in roles])
        return roles

    async def forget_client_roles(self, idp_id: str) -> None:
        await self._cache.invalidate(f"client_roles:{idp_id}")

    async def resolve(
        self,
        session: AsyncSession,
        org: Organization,
        role_ids: Sequence[str],
        token: Optional[str],
    ) -> list[RoleMatch]:
        catalog = await self.org_catalog(session)
        client_roles = None
        if org.idp_id:
            client_roles = await self.client_roles(org.idp_id, token)
        return match_roles(role_ids, catalog, client_roles)

    # --- Assignment ---

    async def assign(
        self,
        session: AsyncSession,
        *,
        org: Organization,
        user: User,
        role_ids: Sequence[str],
        token: Optional[str],
    ) -> list[UserOrgRole]:
        matches = await self.resolve(session, org, role_ids, token)
        return await self._bind(session, org, user, matches, token)

    async def reassign(
        self,
        session: AsyncSession,
        *,
        org: Organization,
        user: User,
        role_ids: Sequence[str],
        token: Optional[str],
    ) -> list[UserOrgRole]:
        """Replace the user's roles in ``org``.

        Roles are resolved before anything is removed. A crash between removal
        and assignment leaves the user with no roles in the organization.
        """
        matches = await self.resolve(session, org, role_ids, token)
        if org.idp_id and user.keycloak_user_id:
            await self.unbind_user(org.idp_id, user.keycloak_user_id, token)
        removed = await role_store.delete_user_org_roles(session, user.id, org.id)
        log.info("role_sync.local_roles_removed", org_id=str(org.id), user_id=str(user.id), count=removed)
        return await self._bind(session, org, user, matches, token)

    async def unbind_user(self, idp_id: str, keycloak_user_id: str, token: str) -> list[IdpRole]:
        """Remove every client role the user holds on ``idp_id``."""
        current = await self._keycloak.get_user_client_roles(idp_id, keycloak_user_id, token)
        await self._keycloak.remove_client_roles(idp_id, keycloak_user_id, current, token)
        log.info("role_sync.unbound", idp_id=idp_id, keycloak_user_id=keycloak_user_id, count=len(current))
        return current

    async def _bind(
        self,
        session: AsyncSession,
        org: Organization,
        user: User,
        matches: list[RoleMatch],
        token: Optional[str],
    ) -> list[UserOrgRole]:
        external = [m.idp_role for m in matches if m.idp_role is not None]
        bound = False
        if org.idp_id and external:
            if not user.keycloak_user_id:
                raise ValidationError("User is not registered with the identity provider")
            await self._keycloak.assign_client_roles(org.idp_id, user.keycloak_user_id, external, token)
            bound = True
            log.info(
                "role_sync.bound",
                org_id=str(org.id),
                user_id=str(user.id),
                roles=[r.name for r in external],
            )

        bindings = [
            (uuid.UUID(m.role.id), m.idp_role.id if m.idp_role else None) for m in matches
        ]
        last_error: Exception | None = None
        for attempt in range(LOCAL_WRITE_ATTEMPTS):
            try:
                async with session.begin_nested():
                    rows = await role_store.add_user_org_roles(session, user.id, org.id, bindings)
                return rows
            except (StorageError, ConflictError) as exc:
                last_error = exc
                log.warning(
                    "role_sync.local_write_failed",
                    org_id=str(org.id),
                    user_id=str(user.id),
                    attempt=attempt + 1,
                )

        if bound:
            await self._compensate(org, user, external, token)
        raise ReconciliationError("Role assignment could not be completed") from last_error

    async def _compensate(
        self, org: Organization, user: User, external: list[IdpRole], token: Optional[str]
    ) -> None:
        try:
            await self._keycloak.remove_client_roles(org.idp_id, user.keycloak_user_id, external, token)
        except IdentityProviderError as exc:
            log.error(
                "role_sync.inconsistent",
                org_id=str(org.id),
                user_id=str(user.id),
                roles=[r.name for r in external],
                upstream_status=exc.upstream_status,
            )
            return
        log.warning("role_sync.compensated", org_id=str(org.id), user_id=str(user.id))

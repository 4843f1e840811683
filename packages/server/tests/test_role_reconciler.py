"""
Role reconciliation tests: catalog-to-client-role matching, binding order,
retry of local writes and compensation of external bindings.
"""

from __future__ import annotations

import pytest

from app.clients.keycloak import IdpRole
from app.core.errors import (
    IdentityProviderError,
    ReconciliationError,
    RoleNotFoundError,
    StorageError,
    ValidationError,
)
from app.core.cache import ReadCache
from app.services.role_reconciler import RoleReconciler, match_roles
from app.store import roles as role_store
from credhub_shared.schemas.common import OrgRoles, RoleRef

CATALOG = [
    RoleRef(id="r-owner", name="owner"),
    RoleRef(id="r-admin", name="admin"),
    RoleRef(id="r-member", name="member"),
]


@pytest.fixture
def reconciler(keycloak):
    return RoleReconciler(keycloak, ReadCache(None, 0))


class TestMatchRoles:
    def test_catalog_only_when_unregistered(self):
        matches = match_roles(["r-owner", "r-member"], CATALOG, None)
        assert [m.role.name for m in matches] == ["owner", "member"]
        assert all(m.idp_role is None for m in matches)

    def test_joins_client_roles_by_name(self):
        client_roles = [IdpRole(id="kc-1", name="admin"), IdpRole(id="kc-2", name="owner")]
        matches = match_roles(["r-admin"], CATALOG, client_roles)
        assert matches[0].idp_role.id == "kc-1"

    def test_unknown_id_is_a_mismatch(self):
        with pytest.raises(RoleNotFoundError, match="One or more roles could not be found"):
            match_roles(["r-owner", "r-unknown"], CATALOG, None)

    def test_missing_client_role_is_a_mismatch(self):
        with pytest.raises(RoleNotFoundError):
            match_roles(["r-member"], CATALOG, [IdpRole(id="kc-1", name="owner")])

    def test_duplicate_requested_id_is_a_mismatch(self):
        with pytest.raises(RoleNotFoundError):
            match_roles(["r-owner", "r-owner"], CATALOG, None)

    def test_duplicate_client_role_name_first_wins(self):
        client_roles = [IdpRole(id="kc-first", name="owner"), IdpRole(id="kc-second", name="owner")]
        matches = match_roles(["r-owner"], CATALOG, client_roles)
        assert len(matches) == 1
        assert matches[0].idp_role.id == "kc-first"


class TestAssign:
    async def test_registered_org_binds_externally_then_locally(self, reconciler, factory, session, keycloak):
        org = await factory.org("Acme", idp_id="idp-acme")
        user = await factory.user("alice@example.com")
        admin_id = await factory.role_id(OrgRoles.ADMIN)

        rows = await reconciler.assign(
            session, org=org, user=user, role_ids=[admin_id], token="tok"
        )

        keycloak.assign_client_roles.assert_awaited_once()
        args = keycloak.assign_client_roles.await_args.args
        assert args[0] == "idp-acme"
        assert args[1] == user.keycloak_user_id
        assert [r.name for r in args[2]] == ["admin"]
        assert len(rows) == 1
        assert rows[0].idp_role_id == "kc-admin"

    async def test_unregistered_org_writes_catalog_rows_only(self, reconciler, factory, session, keycloak):
        org = await factory.org("Plain")
        user = await factory.user("bob@example.com")
        member_id = await factory.role_id(OrgRoles.MEMBER)

        rows = await reconciler.assign(
            session, org=org, user=user, role_ids=[member_id], token=None
        )

        keycloak.get_client_roles.assert_not_awaited()
        keycloak.assign_client_roles.assert_not_awaited()
        assert rows[0].idp_role_id is None

    async def test_platform_level_roles_are_not_assignable(self, reconciler, factory, session):
        org = await factory.org("Acme", idp_id="idp-acme")
        user = await factory.user("alice@example.com")
        holder_id = await factory.role_id(OrgRoles.HOLDER)

        with pytest.raises(RoleNotFoundError):
            await reconciler.assign(
                session, org=org, user=user, role_ids=[holder_id], token="tok"
            )

    async def test_unregistered_user_cannot_be_bound(self, reconciler, factory, session):
        org = await factory.org("Acme", idp_id="idp-acme")
        user = await factory.user("ghost@example.com", keycloak_user_id=None)
        member_id = await factory.role_id(OrgRoles.MEMBER)

        with pytest.raises(ValidationError):
            await reconciler.assign(
                session, org=org, user=user, role_ids=[member_id], token="tok"
            )

    async def test_local_failure_compensates_external_binding(
        self, reconciler, factory, session, keycloak, monkeypatch
    ):
        org = await factory.org("Acme", idp_id="idp-acme")
        user = await factory.user("alice@example.com")
        member_id = await factory.role_id(OrgRoles.MEMBER)
        attempts = []

        async def failing_write(*args, **kwargs):
            attempts.append(1)
            raise StorageError()

        monkeypatch.setattr(role_store, "add_user_org_roles", failing_write)

        with pytest.raises(ReconciliationError):
            await reconciler.assign(
                session, org=org, user=user, role_ids=[member_id], token="tok"
            )

        assert len(attempts) == 2
        keycloak.remove_client_roles.assert_awaited_once()
        assert [r.name for r in keycloak.remove_client_roles.await_args.args[2]] == ["member"]

    async def test_failed_compensation_still_raises(self, reconciler, factory, session, keycloak, monkeypatch):
        org = await factory.org("Acme", idp_id="idp-acme")
        user = await factory.user("alice@example.com")
        member_id = await factory.role_id(OrgRoles.MEMBER)

        async def failing_write(*args, **kwargs):
            raise StorageError()

        monkeypatch.setattr(role_store, "add_user_org_roles", failing_write)
        keycloak.remove_client_roles.side_effect = IdentityProviderError(upstream_status=503)

        with pytest.raises(ReconciliationError):
            await reconciler.assign(
                session, org=org, user=user, role_ids=[member_id], token="tok"
            )


class TestReassign:
    async def test_replaces_roles_on_both_sides(self, reconciler, factory, session, keycloak):
        org = await factory.org("Acme", idp_id="idp-acme")
        user = await factory.user("alice@example.com")
        await factory.grant(user, org, OrgRoles.MEMBER)
        keycloak.get_user_client_roles.return_value = [IdpRole(id="kc-member", name="member")]
        issuer_id = await factory.role_id(OrgRoles.ISSUER)
        verifier_id = await factory.role_id(OrgRoles.VERIFIER)

        await reconciler.reassign(
            session, org=org, user=user, role_ids=[issuer_id, verifier_id], token="tok"
        )

        keycloak.remove_client_roles.assert_awaited_once()
        held = sorted(role.name for _, role in await role_store.user_org_roles(session, user.id, org.id))
        assert held == ["issuer", "verifier"]

    async def test_resolution_failure_removes_nothing(self, reconciler, factory, session, keycloak):
        org = await factory.org("Acme", idp_id="idp-acme")
        user = await factory.user("alice@example.com")
        await factory.grant(user, org, OrgRoles.MEMBER)

        with pytest.raises(RoleNotFoundError):
            await reconciler.reassign(
                session, org=org, user=user, role_ids=["not-a-role"], token="tok"
            )

        keycloak.remove_client_roles.assert_not_awaited()
        held = [role.name for _, role in await role_store.user_org_roles(session, user.id, org.id)]
        assert held == ["member"]

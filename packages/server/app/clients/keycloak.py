"""
Async client for the Keycloak admin REST API and the OIDC token endpoint.

Handles:
- Token grants: client_credentials, password, refresh_token
- Clients, client secrets, client roles, realm roles
- Users and role mappings

Every non-2xx reply becomes ``IdentityProviderError`` carrying the upstream
status. Only GET requests are retried; mutating calls are sent once.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from app.core.config import Settings
from app.core.errors import IdentityProviderError, UnauthorizedError

log = structlog.get_logger()

# Retry configuration (reads only)
MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.5
USER_LOOKUP_ATTEMPTS = 3


class IdpRole(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class ClientRegistration(BaseModel):
    idp_id: str
    client_id: str
    client_secret: str


class TokenSet(BaseModel):
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None
    token_type: str = "Bearer"


def _api_error(resp: httpx.Response, method: str, endpoint: str) -> IdentityProviderError:
    body = resp.text[:500]
    log.error(
        "keycloak.api_error",
        method=method,
        endpoint=endpoint,
        status=resp.status_code,
    )
    return IdentityProviderError(
        f"Identity provider request failed ({resp.status_code})",
        upstream_status=resp.status_code,
        endpoint=endpoint,
        body=body,
    )


class KeycloakClient:
    """Talks to one realm of one Keycloak deployment."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        retry_base_seconds: float = RETRY_BASE_SECONDS,
    ):
        self._settings = settings
        self._base_url = settings.keycloak_base_url
        self._realm = settings.keycloak_realm
        self._client = http_client
        self._owns_client = http_client is None
        self._retry_base_seconds = retry_base_seconds

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.keycloak_timeout_seconds),
            )

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    # --- Transport ---

    def _admin_url(self, path: str) -> str:
        return f"{self._base_url}/admin/realms/{self._realm}{path}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        json: Any = None,
        data: dict | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        if self._client is None:
            await self.open()
        assert self._client

        endpoint = url[len(self._base_url):] if url.startswith(self._base_url) else url
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        attempts = MAX_RETRIES if method == "GET" else 1

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                resp = await self._client.request(
                    method, url, headers=headers, json=json, data=data, params=params
                )
            except httpx.TransportError as exc:
                if last_attempt:
                    log.error("keycloak.unreachable", method=method, endpoint=endpoint, error=str(exc))
                    raise IdentityProviderError(
                        "Identity provider unreachable", endpoint=endpoint
                    ) from exc
                await self._backoff(attempt, endpoint, str(exc))
                continue

            if resp.status_code == 429 and not last_attempt:
                retry_after = float(
                    resp.headers.get("Retry-After", self._retry_base_seconds * (attempt + 1))
                )
                log.warning("keycloak.rate_limited", endpoint=endpoint, retry_after=retry_after)
                await asyncio.sleep(retry_after)
                continue

            if resp.status_code >= 500 and not last_attempt:
                await self._backoff(attempt, endpoint, f"status {resp.status_code}")
                continue

            if resp.is_error:
                raise _api_error(resp, method, endpoint)
            return resp

        raise IdentityProviderError(endpoint=endpoint)

    async def _backoff(self, attempt: int, endpoint: str, error: str) -> None:
        backoff = self._retry_base_seconds * (2 ** attempt)
        log.warning("keycloak.retry", attempt=attempt + 1, backoff=backoff, endpoint=endpoint, error=error)
        await asyncio.sleep(backoff)

    # --- Tokens ---

    async def _token_request(self, form: dict, unauthorized_message: str) -> TokenSet:
        try:
            resp = await self._request("POST", self._settings.keycloak_token_url, data=form)
        except IdentityProviderError as exc:
            if exc.upstream_status in (400, 401):
                raise UnauthorizedError(unauthorized_message) from exc
            raise
        return TokenSet.model_validate(resp.json())

    async def get_management_token(self, client_id: str, client_secret: str) -> str:
        """Client-credentials token for admin API calls."""
        tokens = await self._token_request(
            {
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
            "Invalid management client credentials",
        )
        return tokens.access_token

    async def get_platform_token(self) -> str:
        """Management token for the platform's own management client."""
        return await self.get_management_token(
            self._settings.keycloak_management_client_id,
            self._settings.keycloak_management_client_secret,
        )

    async def authenticate_client(self, client_id: str, client_secret: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
            "Invalid client credentials",
        )

    async def user_token(
        self, email: str, password: str, client_id: str, client_secret: str
    ) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "password",
                "client_id": client_id,
                "client_secret": client_secret,
                "username": email,
                "password": password,
            },
            "Invalid credentials",
        )

    async def refresh_token(
        self, refresh_token: str, client_id: str, client_secret: str
    ) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            "Invalid refresh token",
        )

    # --- Clients ---

    async def create_client(self, org_id: str, org_name: str, token: str) -> ClientRegistration:
        """Register a confidential client for an organization and read back its secret."""
        payload = {
            "clientId": org_id,
            "name": org_name,
            "attributes": {"orgId": org_id},
            "enabled": True,
            "publicClient": False,
            "protocol": "openid-connect",
            "standardFlowEnabled": True,
            "directAccessGrantsEnabled": True,
            "serviceAccountsEnabled": True,
            "redirectUris": [f"/realms/{self._realm}/account/*"],
        }
        await self._request("POST", self._admin_url("/clients"), token=token, json=payload)

        client = await self.get_client(org_id, token)
        if client is None:
            raise IdentityProviderError("Client not found after creation", endpoint="/clients")
        secret = await self.get_client_secret(client["id"], token)
        log.info("keycloak.client_created", client_id=org_id, idp_id=client["id"])
        return ClientRegistration(idp_id=client["id"], client_id=org_id, client_secret=secret)

    async def get_client(self, client_id: str, token: str) -> dict | None:
        resp = await self._request(
            "GET", self._admin_url("/clients"), token=token, params={"clientId": client_id}
        )
        clients = resp.json()
        return clients[0] if clients else None

    async def get_client_redirect_url(self, client_id: str, token: str) -> str | None:
        client = await self.get_client(client_id, token)
        if not client:
            return None
        redirect_uris = client.get("redirectUris") or []
        return redirect_uris[0] if redirect_uris else None

    async def get_client_secret(self, idp_id: str, token: str) -> str:
        resp = await self._request(
            "GET", self._admin_url(f"/clients/{idp_id}/client-secret"), token=token
        )
        return resp.json()["value"]

    async def regenerate_client_secret(self, idp_id: str, token: str) -> str:
        await self._request("POST", self._admin_url(f"/clients/{idp_id}/client-secret"), token=token)
        return await self.get_client_secret(idp_id, token)

    async def delete_client(self, idp_id: str, token: str) -> None:
        await self._request("DELETE", self._admin_url(f"/clients/{idp_id}"), token=token)
        log.info("keycloak.client_deleted", idp_id=idp_id)

    # --- Roles ---

    async def create_client_role(
        self, idp_id: str, name: str, description: str, token: str
    ) -> None:
        """Create a client role; an existing role with that name counts as success."""
        try:
            await self._request(
                "POST",
                self._admin_url(f"/clients/{idp_id}/roles"),
                token=token,
                json={"name": name, "description": description},
            )
        except IdentityProviderError as exc:
            if not exc.is_conflict:
                raise
            log.info("keycloak.role_exists", idp_id=idp_id, role=name)

    async def get_client_roles(self, idp_id: str, token: str) -> list[IdpRole]:
        resp = await self._request("GET", self._admin_url(f"/clients/{idp_id}/roles"), token=token)
        return [IdpRole.model_validate(r) for r in resp.json()]

    async def get_client_role(self, idp_id: str, name: str, token: str) -> IdpRole:
        resp = await self._request(
            "GET", self._admin_url(f"/clients/{idp_id}/roles/{name}"), token=token
        )
        return IdpRole.model_validate(resp.json())

    async def get_realm_roles(self, token: str) -> list[IdpRole]:
        resp = await self._request("GET", self._admin_url("/roles"), token=token)
        return [IdpRole.model_validate(r) for r in resp.json()]

    # --- Role mappings ---

    def _client_mapping_url(self, idp_id: str, user_id: str) -> str:
        return self._admin_url(f"/users/{user_id}/role-mappings/clients/{idp_id}")

    async def get_user_client_roles(self, idp_id: str, user_id: str, token: str) -> list[IdpRole]:
        resp = await self._request("GET", self._client_mapping_url(idp_id, user_id), token=token)
        return [IdpRole.model_validate(r) for r in resp.json()]

    async def assign_client_roles(
        self, idp_id: str, user_id: str, roles: list[IdpRole], token: str
    ) -> None:
        await self._request(
            "POST",
            self._client_mapping_url(idp_id, user_id),
            token=token,
            json=[{"id": r.id, "name": r.name} for r in roles],
        )

    async def remove_client_roles(
        self, idp_id: str, user_id: str, roles: list[IdpRole], token: str
    ) -> None:
        if not roles:
            return
        await self._request(
            "DELETE",
            self._client_mapping_url(idp_id, user_id),
            token=token,
            json=[{"id": r.id, "name": r.name} for r in roles],
        )

    async def assign_realm_roles(self, user_id: str, roles: list[IdpRole], token: str) -> None:
        await self._request(
            "POST",
            self._admin_url(f"/users/{user_id}/role-mappings/realm"),
            token=token,
            json=[{"id": r.id, "name": r.name} for r in roles],
        )

    # --- Users ---

    async def get_user_by_email(self, email: str, token: str) -> dict | None:
        resp = await self._request(
            "GET", self._admin_url("/users"), token=token, params={"email": email, "exact": "true"}
        )
        users = resp.json()
        return users[0] if users else None

    async def get_user_by_username(self, username: str, token: str) -> dict | None:
        resp = await self._request(
            "GET",
            self._admin_url("/users"),
            token=token,
            params={"username": username, "exact": "true"},
        )
        users = resp.json()
        return users[0] if users else None

    async def create_user(
        self,
        *,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        password: str,
        token: str,
    ) -> str:
        """Create (or adopt an existing) identity-provider user; returns its id."""
        payload = {
            "username": username,
            "email": email,
            "firstName": first_name,
            "lastName": last_name,
            "enabled": True,
            "emailVerified": True,
            "credentials": [{"type": "password", "value": password, "temporary": False}],
        }
        try:
            resp = await self._request("POST", self._admin_url("/users"), token=token, json=payload)
        except IdentityProviderError as exc:
            if not exc.is_conflict:
                raise
            existing = await self.get_user_by_email(email, token)
            if existing is None:
                raise
            log.info("keycloak.user_adopted", user_id=existing["id"])
            await self.reset_user_password(existing["id"], password, token)
            return existing["id"]

        location = resp.headers.get("Location", "")
        if "/users/" in location:
            return location.rsplit("/", 1)[-1]

        for attempt in range(USER_LOOKUP_ATTEMPTS):
            user = await self.get_user_by_username(username, token)
            if user:
                return user["id"]
            await asyncio.sleep(self._retry_base_seconds * (attempt + 1))

        user = await self.get_user_by_email(email, token)
        if user:
            return user["id"]
        raise IdentityProviderError("User not found after creation", endpoint="/users")

    async def reset_user_password(self, user_id: str, password: str, token: str) -> None:
        await self._request(
            "PUT",
            self._admin_url(f"/users/{user_id}/reset-password"),
            token=token,
            json={"type": "password", "value": password, "temporary": False},
        )

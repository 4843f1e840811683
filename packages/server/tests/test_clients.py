"""
Outbound client tests against ``httpx.MockTransport``: Keycloak admin/token
API, the email provider, template rendering and logo storage.
"""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from app.clients.keycloak import IdpRole, KeycloakClient
from app.clients.mailer import Mailer
from app.clients.storage import ImageStorage, parse_image_data_uri
from app.core.errors import EmailDeliveryError, IdentityProviderError, UnauthorizedError, ValidationError
from app.services.email_notifier import EmailNotifier

PNG_URI = "data:image/png;base64," + base64.b64encode(b"\x89PNG fake").decode()


def _keycloak(settings, handler) -> KeycloakClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return KeycloakClient(settings, http_client=client, retry_base_seconds=0)


class _Recorder:
    """Replays queued responses and records every request."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


class TestKeycloakClient:
    async def test_get_is_retried_on_server_error(self, settings):
        recorder = _Recorder(
            httpx.Response(503),
            httpx.Response(200, json=[{"id": "kc-1", "name": "owner"}]),
        )
        kc = _keycloak(settings, recorder)

        roles = await kc.get_client_roles("idp-1", "tok")

        assert roles == [IdpRole(id="kc-1", name="owner")]
        assert len(recorder.requests) == 2
        assert recorder.requests[0].headers["Authorization"] == "Bearer tok"
        assert recorder.requests[0].url.path == "/admin/realms/credhub/clients/idp-1/roles"

    async def test_get_gives_up_after_three_attempts(self, settings):
        recorder = _Recorder(httpx.Response(500), httpx.Response(500), httpx.Response(500))
        kc = _keycloak(settings, recorder)

        with pytest.raises(IdentityProviderError) as exc_info:
            await kc.get_realm_roles("tok")
        assert exc_info.value.upstream_status == 500
        assert len(recorder.requests) == 3

    async def test_post_is_not_retried(self, settings):
        recorder = _Recorder(httpx.Response(503), httpx.Response(204))
        kc = _keycloak(settings, recorder)

        with pytest.raises(IdentityProviderError):
            await kc.assign_client_roles("idp-1", "user-1", [IdpRole(id="kc-1", name="owner")], "tok")
        assert len(recorder.requests) == 1

    async def test_existing_client_role_is_success(self, settings):
        recorder = _Recorder(httpx.Response(409, json={"errorMessage": "exists"}))
        kc = _keycloak(settings, recorder)

        await kc.create_client_role("idp-1", "owner", "Organization owner", "tok")

        assert json.loads(recorder.requests[0].content) == {"name": "owner", "description": "Organization owner"}

    async def test_token_rejection_is_unauthorized(self, settings):
        recorder = _Recorder(httpx.Response(401, json={"error": "invalid_grant"}))
        kc = _keycloak(settings, recorder)

        with pytest.raises(UnauthorizedError, match="Invalid credentials"):
            await kc.user_token("u1@example.com", "bad", "client", "secret")

    async def test_platform_token_uses_management_client(self, settings):
        recorder = _Recorder(httpx.Response(200, json={"access_token": "mgmt", "expires_in": 60}))
        kc = _keycloak(settings, recorder)

        assert await kc.get_platform_token() == "mgmt"
        form = dict(httpx.QueryParams(recorder.requests[0].content.decode()))
        assert form["grant_type"] == "client_credentials"
        assert form["client_id"] == "platform-admin-client"

    async def test_create_client_reads_back_secret(self, settings):
        recorder = _Recorder(
            httpx.Response(201),
            httpx.Response(200, json=[{"id": "idp-1", "clientId": "org-1"}]),
            httpx.Response(200, json={"value": "s3cret"}),
        )
        kc = _keycloak(settings, recorder)

        registration = await kc.create_client("org-1", "Acme", "tok")

        assert (registration.idp_id, registration.client_secret) == ("idp-1", "s3cret")
        assert json.loads(recorder.requests[0].content)["clientId"] == "org-1"

    async def test_create_user_reads_location(self, settings):
        recorder = _Recorder(
            httpx.Response(201, headers={"Location": "http://localhost:8080/admin/realms/credhub/users/kc-42"})
        )
        kc = _keycloak(settings, recorder)

        user_id = await kc.create_user(
            email="u1@example.com", username="u1", first_name="U", last_name="One", password="pw", token="tok"
        )

        assert user_id == "kc-42"

    async def test_create_user_conflict_adopts_existing(self, settings):
        recorder = _Recorder(
            httpx.Response(409),
            httpx.Response(200, json=[{"id": "kc-7", "email": "u1@example.com"}]),
            httpx.Response(204),
        )
        kc = _keycloak(settings, recorder)

        user_id = await kc.create_user(
            email="u1@example.com", username="u1", first_name="U", last_name="One", password="pw", token="tok"
        )

        assert user_id == "kc-7"
        assert recorder.requests[-1].method == "PUT"
        assert recorder.requests[-1].url.path.endswith("/users/kc-7/reset-password")

    async def test_remove_nothing_sends_nothing(self, settings):
        recorder = _Recorder()
        kc = _keycloak(settings, recorder)

        await kc.remove_client_roles("idp-1", "user-1", [], "tok")

        assert recorder.requests == []


class TestMailer:
    def _mailer(self, settings, recorder) -> Mailer:
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        return Mailer(settings, http_client=client, retry_base_seconds=0)

    async def test_sends_with_bearer_key(self, settings):
        recorder = _Recorder(httpx.Response(200, json={"id": "msg-9"}))

        message_id = await self._mailer(settings, recorder).send(to="a@example.com", subject="Hi", html="<p>x</p>")

        assert message_id == "msg-9"
        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Bearer test-key"
        assert json.loads(request.content)["to"] == ["a@example.com"]

    async def test_retries_rate_limit(self, settings):
        recorder = _Recorder(httpx.Response(429), httpx.Response(200, json={"id": "msg-9"}))

        assert await self._mailer(settings, recorder).send(to="a@example.com", subject="Hi", html="x") == "msg-9"
        assert len(recorder.requests) == 2

    async def test_client_error_is_final(self, settings):
        recorder = _Recorder(httpx.Response(422), httpx.Response(200, json={"id": "never"}))

        with pytest.raises(EmailDeliveryError):
            await self._mailer(settings, recorder).send(to="a@example.com", subject="Hi", html="x")
        assert len(recorder.requests) == 1

    async def test_unconfigured_provider(self, settings):
        settings.email_api_key = ""

        with pytest.raises(EmailDeliveryError, match="not configured"):
            await self._mailer(settings, _Recorder()).send(to="a@example.com", subject="Hi", html="x")


class TestEmailNotifier:
    async def test_branding_prefers_overrides(self, settings, mailer):
        notifier = EmailNotifier(settings, mailer)

        branding = notifier.branding(None, platform_name="Acme ID")

        assert branding.platform_name == "Acme ID"
        assert branding.support_email == settings.support_email

    async def test_invitation_links_to_sign_up_for_new_users(self, settings, mailer):
        notifier = EmailNotifier(settings, mailer)

        await notifier.send_invitation(
            to="new@example.com",
            org_name="Acme",
            roles=["admin"],
            first_name=None,
            is_registered=False,
            branding=notifier.branding(None),
        )

        kwargs = mailer.send.await_args.kwargs
        assert kwargs["subject"] == "Invitation to join “Acme” on Credential Hub"
        assert "https://app.example.com/sign-up?email=new%40example.com" in kwargs["html"]
        assert kwargs["sender"] == settings.email_from

    async def test_removal_notice(self, settings, mailer):
        notifier = EmailNotifier(settings, mailer)

        await notifier.send_org_removal(to="a@example.com", org_name="Acme", branding=notifier.branding(None))

        kwargs = mailer.send.await_args.kwargs
        assert kwargs["subject"] == "Removal of participation of “Acme”"
        assert "Acme" in kwargs["html"]

    async def test_reset_link(self, settings, mailer):
        notifier = EmailNotifier(settings, mailer)

        await notifier.send_password_reset(to="a@example.com", token="abc", branding=notifier.branding(None))

        assert "https://app.example.com/reset-password?token=abc" in mailer.send.await_args.kwargs["html"]


class TestImageStorage:
    def test_parse_data_uri(self):
        extension, raw = parse_image_data_uri(PNG_URI)
        assert extension == "png"
        assert raw == b"\x89PNG fake"

    @pytest.mark.parametrize("value", ["not-a-uri", "data:image/png;base64,!!!", "data:image/png;base64,"])
    def test_rejects_bad_uris(self, value):
        with pytest.raises(ValidationError):
            parse_image_data_uri(value)

    async def test_local_backend_writes_file(self, settings, tmp_path):
        settings.local_storage_path = str(tmp_path)

        url = await ImageStorage(settings).store_data_uri(PNG_URI, prefix="org-logos")

        key = url.removeprefix(settings.public_asset_base_url + "/")
        assert key.startswith("org-logos/") and key.endswith(".png")
        assert (tmp_path / key).read_bytes() == b"\x89PNG fake"

"""
Transactional email: renders the jinja2 templates under ``app/templates/email``
and hands the result to the mailer.

Every send raises ``EmailDeliveryError`` on failure; callers decide whether
that is fatal.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from urllib.parse import urlencode, urljoin

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel

from app.clients.mailer import Mailer
from app.core.config import Settings
from app.models.platform import PlatformConfig

log = structlog.get_logger()

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

RESET_TOKEN_TTL_MINUTES = 60


class Branding(BaseModel):
    platform_name: str
    brand_logo_url: str
    support_email: str
    email_from: str
    front_end_url: str


class EmailNotifier:
    def __init__(self, settings: Settings, mailer: Mailer, template_dir: Path = TEMPLATE_DIR):
        self._settings = settings
        self._mailer = mailer
        self._env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(["html", "xml", "jinja"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def branding(
        self,
        config: Optional[PlatformConfig],
        *,
        platform_name: Optional[str] = None,
        brand_logo_url: Optional[str] = None,
    ) -> Branding:
        """Explicit overrides, then the platform_config row, then settings."""
        s = self._settings
        return Branding(
            platform_name=platform_name or (config and config.platform_name) or s.platform_name,
            brand_logo_url=brand_logo_url or (config and config.brand_logo_url) or s.brand_logo_url,
            support_email=(config and config.support_email) or s.support_email,
            email_from=(config and config.email_from) or s.email_from,
            front_end_url=s.front_end_url,
        )

    def render(self, template: str, branding: Branding, **context) -> str:
        return self._env.get_template(template).render(**branding.model_dump(), **context)

    async def _send(self, to: str, subject: str, html: str, branding: Branding, kind: str) -> Optional[str]:
        message_id = await self._mailer.send(to=to, subject=subject, html=html, sender=branding.email_from)
        log.info("email.sent", kind=kind, message_id=message_id)
        return message_id

    # --- Messages ---

    async def send_verification(
        self,
        *,
        to: str,
        verification_code: str,
        redirect_url: Optional[str],
        client_id: str,
        branding: Branding,
    ) -> Optional[str]:
        base = redirect_url if redirect_url and redirect_url != "*" else branding.front_end_url
        path = "/verify-email-success" if client_id == self._settings.keycloak_management_client_id else ""
        query = urlencode({"verificationCode": verification_code, "email": to})
        verification_url = f"{urljoin(base, path) if path else base}?{query}"

        html = self.render("verify_email.html.jinja", branding, email=to, verification_url=verification_url)
        subject = f"[{branding.platform_name}] Verify your email to activate your account"
        return await self._send(to, subject, html, branding, "verify_email")

    async def send_password_reset(self, *, to: str, token: str, branding: Branding) -> Optional[str]:
        query = urlencode({"token": token, "email": to})
        reset_url = f"{branding.front_end_url.rstrip('/')}/reset-password?{query}"
        html = self.render(
            "reset_password.html.jinja",
            branding,
            email=to,
            reset_url=reset_url,
            expires_in_minutes=RESET_TOKEN_TTL_MINUTES,
        )
        subject = f"[{branding.platform_name}] Important: Password Reset Request"
        return await self._send(to, subject, html, branding, "reset_password")

    async def send_invitation(
        self,
        *,
        to: str,
        org_name: str,
        roles: list[str],
        first_name: Optional[str],
        is_registered: bool,
        branding: Branding,
    ) -> Optional[str]:
        page = "sign-in" if is_registered else "sign-up"
        action_url = f"{branding.front_end_url.rstrip('/')}/{page}?{urlencode({'email': to})}"
        html = self.render(
            "invitation.html.jinja",
            branding,
            email=to,
            org_name=org_name,
            roles=roles,
            first_name=first_name,
            is_registered=is_registered,
            action_url=action_url,
        )
        subject = f"Invitation to join “{org_name}” on {branding.platform_name}"
        return await self._send(to, subject, html, branding, "invitation")

    async def send_org_removal(self, *, to: str, org_name: str, branding: Branding) -> Optional[str]:
        html = self.render("org_removal.html.jinja", branding, email=to, org_name=org_name)
        subject = f"Removal of participation of “{org_name}”"
        return await self._send(to, subject, html, branding, "org_removal")

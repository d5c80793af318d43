from __future__ import annotations

from typing import Optional

import httpx

from authcore.logging import get_logger
from authcore.storage.models import User

logger = get_logger(__name__)


class EmailNotifier:
    """Delivers login codes and verification links through an HTTP email API.

    With no API key configured it runs in dev mode and logs the message
    instead of sending it. Delivery failures are logged and reported as
    ``False``; nothing is raised to the caller.
    """

    def __init__(
        self,
        *,
        api_url: str = "https://api.resend.com/emails",
        api_key: Optional[str] = None,
        from_email: str = "noreply@authcore.local",
        base_url: str = "http://localhost:8000",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    async def _send_email(self, to_email: str, subject: str, html_body: str) -> bool:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=html_body[:200],
            )
            return True

        payload = {
            "from": self.from_email,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as exc:
            logger.error(
                "email_transport_failed",
                to=self._redact_email(to_email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        if response.status_code >= 400:
            logger.error(
                "email_rejected",
                to=self._redact_email(to_email),
                status_code=response.status_code,
                body=response.text[:200],
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    async def send_otp(self, user: User, code: str) -> bool:
        subject = "Your login code"
        html_body = (
            f"<p>Hello {user.name or 'there'},</p>"
            f"<p>Your login code is <strong>{code}</strong>.</p>"
            "<p>It expires in 5 minutes. If you did not try to sign in, ignore this email.</p>"
        )
        return await self._send_email(user.email, subject, html_body)

    async def send_verification(self, user: User, token: str) -> bool:
        link = f"{self.base_url}/verify-email?token={token}"
        subject = "Verify your email address"
        html_body = (
            f"<p>Hello {user.name or 'there'},</p>"
            f'<p>Confirm your address by opening <a href="{link}">this link</a>.</p>'
            "<p>The link is valid for 24 hours.</p>"
        )
        return await self._send_email(user.email, subject, html_body)

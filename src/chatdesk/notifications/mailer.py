"""Best-effort transactional mail via SendGrid or Resend."""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

_ENDPOINTS = {
    "sendgrid": "https://api.sendgrid.com/v3/mail/send",
    "resend": "https://api.resend.com/emails",
}


class Mailer:
    """Sends mail through the configured provider; logs instead when none is set.

    Delivery failures are logged and reported as ``False``; callers never
    roll back on them.
    """

    def __init__(
        self,
        provider: str = "",
        api_key: str = "",
        from_email: str = "no-reply@chatdesk.local",
        from_name: str = "Chatdesk",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider.lower()
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._transport = transport
        self.sent: list[tuple[str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> bool:
        if self.provider not in _ENDPOINTS:
            logger.info("No mail provider configured; would send '%s' to %s", subject, to)
            self.sent.append((to, subject))
            return False
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=30) as client:
                resp = await client.post(
                    _ENDPOINTS[self.provider],
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=self._payload(to, subject, body),
                )
        except httpx.HTTPError:
            logger.exception("Mail delivery via %s failed", self.provider)
            return False
        if resp.status_code in (200, 201, 202):
            logger.info("Mail sent via %s to %s", self.provider, to)
            self.sent.append((to, subject))
            return True
        logger.warning("%s rejected mail: %s %s", self.provider, resp.status_code, resp.text)
        return False

    def _payload(self, to: str, subject: str, body: str) -> dict:
        if self.provider == "sendgrid":
            return {
                "personalizations": [{"to": [{"email": to}]}],
                "from": {"email": self.from_email, "name": self.from_name},
                "subject": subject,
                "content": [{"type": "text/plain", "value": body}],
            }
        return {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to],
            "subject": subject,
            "text": body,
        }

    async def send_welcome(self, to: str, name: str, tenant_name: str, slug: str) -> bool:
        body = (
            f"Hi {name},\n\n"
            f"Your Chatdesk workspace '{tenant_name}' is ready.\n"
            f"Sign in at https://{slug}.chatdesk.io\n\n"
            f"The Chatdesk team"
        )
        return await self.send(to, f"Welcome to Chatdesk, {name}", body)

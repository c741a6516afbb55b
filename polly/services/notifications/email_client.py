import re
import uuid
from typing import Dict, Optional, Protocol

import httpx

from polly.config.settings import settings
from polly.utils.errors import PermanentDeliveryError, TransientDeliveryError
from polly.utils.logging import get_logger

logger = get_logger()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(address: Optional[str]) -> bool:
    return bool(address) and EMAIL_PATTERN.match(address) is not None


class EmailClient(Protocol):
    """Capability that hands a rendered email to a provider.

    Returns the provider's message id, or raises TransientDeliveryError /
    PermanentDeliveryError.
    """

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> str: ...


class ResendEmailClient:
    """Email client backed by the Resend HTTP API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.api_url = api_url or settings.RESEND_API_URL
        self.from_email = from_email or settings.FROM_EMAIL
        self.from_name = from_name or settings.FROM_NAME
        self.timeout = timeout if timeout is not None else settings.EMAIL_TIMEOUT_SECONDS
        self._http_client = http_client

    @property
    def sender(self) -> str:
        return f"{self.from_name} <{self.from_email}>"

    def _payload(
        self, to: str, subject: str, html: str, tags: Optional[Dict[str, str]]
    ) -> dict:
        payload = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if tags:
            payload["tags"] = [
                {"name": name, "value": value} for name, value in tags.items()
            ]
        return payload

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> httpx.Response:
        return await client.post(
            self.api_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> str:
        if not is_valid_email(to):
            raise PermanentDeliveryError(
                f"Invalid recipient address: {to}", error_code="INVALID_RECIPIENT"
            )

        payload = self._payload(to, subject, html, tags)
        try:
            if self._http_client is not None:
                response = await self._post(self._http_client, payload)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, payload)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Email provider timed out: {e}")
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Email provider unreachable: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                f"Email provider returned {response.status_code}: {response.text}"
            )
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"Email provider rejected message ({response.status_code}): {response.text}"
            )

        message_id = response.json().get("id")
        if not message_id:
            raise PermanentDeliveryError("Email provider response carried no message id")

        logger.info("Email accepted by provider", to=to, message_id=message_id)
        return message_id


class ConsoleEmailClient:
    """Development client that logs emails instead of sending them"""

    def __init__(self):
        self.outbox = []

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> str:
        if not is_valid_email(to):
            raise PermanentDeliveryError(
                f"Invalid recipient address: {to}", error_code="INVALID_RECIPIENT"
            )

        message_id = f"console-{uuid.uuid4()}"
        self.outbox.append(
            {"id": message_id, "to": to, "subject": subject, "html": html, "tags": tags}
        )
        logger.info(
            "Console email",
            to=to,
            subject=subject,
            message_id=message_id,
            tags=tags or {},
        )
        return message_id


def get_email_client() -> EmailClient:
    """Select the email client configured by EMAIL_PROVIDER."""
    provider = settings.EMAIL_PROVIDER.lower()

    if provider == "resend":
        return ResendEmailClient()

    if provider != "console":
        logger.warning(
            "Unknown email provider, falling back to console", provider=provider
        )
    return ConsoleEmailClient()

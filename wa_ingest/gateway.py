"""
Outbound messaging through the WhatsApp Cloud API.

The ingestion core only depends on the OutboundGateway protocol; the
CloudApiGateway below is the production implementation.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from wa_ingest.config import Settings
from wa_ingest.errors import GatewayError, GatewayNotConfigured
from wa_ingest.phone import mask_phone, to_e164

logger = logging.getLogger(__name__)


class OutboundGateway(Protocol):
    async def send_text(self, to: str, body: str) -> str:
        """Send a text message and return the provider message id."""
        ...

    async def send_template(
        self,
        to: str,
        template_name: str,
        language_code: str,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        """Send an approved template and return the provider message id."""
        ...

    async def mark_read(self, provider_message_id: str) -> None:
        """Acknowledge an inbound message as read."""
        ...


class CloudApiGateway:
    """
    Send-capable client for ``{base}/{version}/{phone_number_id}/messages``.

    Args:
        access_token: System-user bearer token
        phone_number_id: Business phone number id messages are sent from
        client: Optional httpx.AsyncClient (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v22.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "CloudApiGateway":
        return cls(
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            api_version=settings.WHATSAPP_API_VERSION,
            base_url=settings.WHATSAPP_API_BASE_URL,
            timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
            client=client,
        )

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.access_token or not self.phone_number_id:
            raise GatewayNotConfigured(
                "WhatsApp credentials not configured. "
                "Set WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID."
            )

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }
        try:
            response = await self._client.post(self.messages_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"request to send API failed: {e.__class__.__name__}") from e

        if response.is_error:
            detail = _error_detail(response)
            logger.warning(f"Send API returned {response.status_code}: {detail}")
            raise GatewayError(f"send API error {response.status_code}: {detail}", response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("send API returned a non-JSON body", response.status_code) from e

    async def _send(self, to: str, payload: dict[str, Any]) -> str:
        recipient = to_e164(to)
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": recipient.lstrip("+"),
            **payload,
        }
        data = await self._post(body)
        try:
            message_id = data["messages"][0]["id"]
        except (KeyError, IndexError, TypeError):
            raise GatewayError("send API response carried no message id") from None
        logger.info(f"Message {message_id} sent to {mask_phone(recipient)} ({payload['type']})")
        return message_id

    async def send_text(self, to: str, body: str, preview_url: bool = False) -> str:
        return await self._send(to, {"type": "text", "text": {"body": body, "preview_url": preview_url}})

    async def send_template(
        self,
        to: str,
        template_name: str,
        language_code: str,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        """Send an already approved template; returns the provider message id."""
        template = {
            "name": template_name,
            "language": {"code": language_code},
            "components": components or [],
        }
        return await self._send(to, {"type": "template", "template": template})

    async def mark_read(self, provider_message_id: str) -> None:
        await self._post({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": provider_message_id,
        })
        logger.debug(f"Message {provider_message_id} marked as read")


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    error = data.get("error", {}) if isinstance(data, dict) else data
    if not isinstance(error, dict):
        return str(error)[:200]
    return f"{error.get('type', 'error')} {error.get('code', '')}: {error.get('message', '')}".strip()

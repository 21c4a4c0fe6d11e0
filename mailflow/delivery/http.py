"""Generic HTTP JSON delivery channel."""

import httpx

from mailflow.core.config import Settings, get_settings
from mailflow.core.errors import DeliveryError
from mailflow.core.logging import get_logger
from mailflow.delivery.base import DeliveryChannel
from mailflow.models.message import DeliveryResult, OutboundMessage

logger = get_logger(__name__)


class HTTPChannel(DeliveryChannel):
    """Posts messages as JSON to a delivery API.

    The endpoint is expected to answer 2xx with an optional ``message_id``
    field; any other status is a rejection.
    """

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(timeout=self._settings.delivery_timeout)

    @property
    def channel_type(self) -> str:
        return "http"

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        if not self._settings.delivery_api_url:
            raise DeliveryError("HTTP delivery not configured")

        headers = {}
        if self._settings.delivery_api_key:
            headers["Authorization"] = f"Bearer {self._settings.delivery_api_key}"

        payload = {
            "from": self._settings.sender_address,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
            "metadata": message.metadata,
        }

        try:
            response = await self._client.post(self._settings.delivery_api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("HTTP delivery error", to=message.to, error=str(e))
            raise DeliveryError(f"HTTP delivery failed: {e}") from e

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message_id = body.get("message_id") if isinstance(body, dict) else None
            logger.info("Email sent", to=message.to, message_id=message_id)
            return DeliveryResult(success=True, message_id=message_id)

        logger.warning("HTTP delivery rejected", to=message.to, status_code=response.status_code)
        return DeliveryResult(success=False, error=f"Delivery API returned {response.status_code}")

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()

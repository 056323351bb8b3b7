"""
HTTP client for the external WhatsApp gateway (Evolution API).

Every call carries the instance API key and a short timeout, and raises
GatewayError on transport errors, timeouts and non-2xx responses so callers
can fall back or retry.
"""
import logging
from typing import Any, Dict, Optional
import httpx

from core.config import settings
from core.exceptions import GatewayError
from db.models import MediaType

logger = logging.getLogger(__name__)

# Typing simulation applied by the gateway before delivering a message
SEND_DELAY_MS = 1200


class WhatsAppGateway:
    """
    Async Evolution API client.

    Attributes:
        instance_name: Gateway instance the calls are scoped to
        webhook_url: Callback registered on (re)initialization
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_name: Optional[str] = None,
        timeout: Optional[float] = None,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            base_url: Gateway base URL (default: settings.gateway_base_url)
            api_key: Gateway API key (default: settings.gateway_api_key)
            instance_name: Instance name (default: settings.gateway_instance_name)
            timeout: Per-call timeout in seconds (default: settings.gateway_timeout_seconds)
            webhook_url: Inbound webhook callback (default: settings.webhook_url)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.instance_name = instance_name or settings.gateway_instance_name
        self.webhook_url = webhook_url or settings.webhook_url
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "apikey": api_key if api_key is not None else settings.gateway_api_key,
                "Content-Type": "application/json"
            },
            timeout=timeout if timeout is not None else settings.gateway_timeout_seconds,
            transport=transport
        )

    async def initialize(self) -> Dict[str, Any]:
        """Create or reconnect the gateway instance and register the webhook."""
        logger.info(f"Initializing gateway instance {self.instance_name}")
        return await self._request(
            "POST",
            "/instance/init",
            json={"instanceName": self.instance_name, "webhook": self.webhook_url}
        )

    async def get_instance_status(self) -> Dict[str, Any]:
        """
        Fetch the instance link state.

        Returns:
            Gateway response, e.g. {"instance": {"state": "open"}}
        """
        return await self._request("GET", "/instance/info", params={"instanceName": self.instance_name})

    async def send_text(self, to: str, message: str) -> Dict[str, Any]:
        """
        Send a text message.

        Args:
            to: Recipient phone number
            message: Message body

        Returns:
            Gateway response
        """
        return await self._request(
            "POST",
            "/message/text",
            params={"instanceName": self.instance_name},
            json={
                "number": to,
                "options": {"delay": SEND_DELAY_MS, "presence": "composing"},
                "textMessage": {"text": message}
            }
        )

    async def send_media(
        self,
        to: str,
        url: str,
        media_type: MediaType,
        caption: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a media message.

        Args:
            to: Recipient phone number
            url: Public URL of the media
            media_type: IMAGE, VIDEO, AUDIO or DOCUMENT
            caption: Optional caption

        Returns:
            Gateway response
        """
        media_type = MediaType(media_type)
        return await self._request(
            "POST",
            "/message/media",
            params={"instanceName": self.instance_name},
            json={
                "number": to,
                "options": {"delay": SEND_DELAY_MS},
                "mediaMessage": {
                    "mediatype": media_type.value.lower(),
                    "media": url,
                    "caption": caption or ""
                }
            }
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Gateway timeout on {method} {path}: {e}")
            raise GatewayError(f"Gateway timeout on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Gateway transport error on {method} {path}: {e}")
            raise GatewayError(f"Gateway unreachable: {e}") from e

        if response.is_error:
            logger.warning(f"Gateway rejected {method} {path}: {response.status_code} {response.text[:200]}")
            raise GatewayError(f"Gateway rejected {method} {path}", status_code=response.status_code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"Gateway returned non-JSON body for {method} {path}") from e

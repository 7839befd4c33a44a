"""
Instagram Client

Sends direct-message replies through the Instagram Graph API.
One call sends one message; splitting long replies is the dispatcher's job.
"""

import logging
from typing import Optional

import httpx

from .errors import ChannelError
from .tenants import ChannelCredentials

logger = logging.getLogger("parley.common.instagram_client")

DEFAULT_TIMEOUT = httpx.Timeout(60.0)


class InstagramClient:
    """
    Reply channel for a tenant's Instagram page.

    Usage:
        client = InstagramClient("https://graph.facebook.com/v21.0")
        ok = client.send("1789...", "Hello!", tenant.credentials)
    """

    def __init__(self, graph_api_url: str, http_client: Optional[httpx.Client] = None):
        """
        Initialize client.

        Args:
            graph_api_url: Graph API base URL including version
            http_client: Pre-built httpx client (tests inject a MockTransport)
        """
        self._base_url = graph_api_url.rstrip("/")
        self._http = http_client or httpx.Client(timeout=DEFAULT_TIMEOUT)

    def send(self, recipient_id: str, text: str, credentials: ChannelCredentials) -> bool:
        """
        Send one text message.

        Args:
            recipient_id: Instagram-scoped id of the customer
            text: Message body (already within the platform limit)
            credentials: Page id and access token of the tenant

        Returns:
            True if the platform accepted the message

        Raises:
            ChannelError: the request could not be completed
        """
        url = f"{self._base_url}/{credentials.page_id}/messages"
        body = {
            "recipient": {"id": recipient_id},
            "message": {"text": text},
            "messaging_type": "RESPONSE",
            "access_token": credentials.access_token,
        }

        try:
            response = self._http.post(url, json=body)
        except httpx.HTTPError as e:
            raise ChannelError(f"Send to {recipient_id} failed: {e}") from e

        if response.is_error:
            logger.error(
                "Graph API rejected message to %s (%d): %s",
                recipient_id, response.status_code, response.text[:500],
            )
            return False

        logger.debug("Message delivered to %s", recipient_id)
        return True

    def close(self) -> None:
        self._http.close()

"""Web-push notification endpoint stub and its HTTP client.

The server side only acknowledges requests for now; delivery to push
services is not wired up yet.
"""

import logging
from typing import Self

import httpx

from sigor.core.config import get_push_endpoint

logger = logging.getLogger(__name__)

READY_MESSAGE = "Push notification feature is ready for implementation"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def handle_push_request(payload: dict) -> dict:
    """Acknowledge a push request of ``{subscription, message, title}``."""
    logger.info(
        "Push notification requested: title=%r message=%r subscription=%s",
        payload.get("title"),
        payload.get("message"),
        "yes" if payload.get("subscription") else "no",
    )
    return {"success": True, "message": READY_MESSAGE}


class PushClient:
    """Async client for the push-notification endpoint.

    Usage::

        async with PushClient() as push:
            result = await push.send(subscription, "Report to base", "SIGOR")
    """

    def __init__(self, endpoint: str | None = None, *, timeout: float = 10.0) -> None:
        self.endpoint = endpoint or get_push_endpoint()
        self.timeout = timeout
        self.client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        self.client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    async def send(self, subscription: dict | None, message: str, title: str) -> dict:
        """POST a push request and return the decoded JSON response.

        Returns:
            The endpoint's JSON body, or ``{"error": ...}`` on HTTP failure
        """
        if not self.client:
            raise RuntimeError("Client must be used as async context manager")
        if not self.endpoint:
            return {"error": "No push endpoint configured"}

        body = {"subscription": subscription, "message": message, "title": title}
        try:
            response = await self.client.post(self.endpoint, json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.error("Push request to %s failed: %s", self.endpoint, e)
            return {"error": str(e)}

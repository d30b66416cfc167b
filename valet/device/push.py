import logging

import httpx

logger = logging.getLogger(__name__)


class PushSubscriptionManager:
    """Registers this device's push endpoint with the server."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def vapid_public_key(self) -> str:
        resp = await self._client.get("/api/push-subscription/vapid-public-key")
        resp.raise_for_status()
        return resp.json()["publicKey"]

    async def subscribe(
        self, subscription: dict, location_name: str | None = None
    ) -> dict:
        """``subscription`` is the platform handle: {endpoint, keys: {p256dh, auth}}."""
        body = {**subscription, "locationName": location_name}
        resp = await self._client.post("/api/push-subscription", json=body)
        resp.raise_for_status()
        logger.info(
            "push subscription registered for %s", subscription["endpoint"][:50]
        )
        return resp.json()

    async def unsubscribe(self, endpoint: str) -> bool:
        resp = await self._client.request(
            "DELETE", "/api/push-subscription", json={"endpoint": endpoint}
        )
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return True

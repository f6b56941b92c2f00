"""Home Assistant REST API client.

The bridge talks to HA through MQTT for state; this client is only used
for side-channel calls such as persistent notifications about heal actions.

Usage:
    from shared.ha_client import HomeAssistantClient
    from shared.config import Settings

    settings = Settings()
    ha = HomeAssistantClient(settings.ha_url, settings.ha_token)
    await ha.create_notification("Wallbox", "OCPP stack restarted")
"""

from __future__ import annotations

from typing import Any

import httpx

from shared.log import get_logger

logger = get_logger("ha-client")


class HomeAssistantClient:
    """Async Home Assistant REST API client."""

    def __init__(self, url: str, token: str) -> None:
        self.url = url.rstrip("/")
        self._token = token
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        self._client: httpx.AsyncClient | None = None

    @property
    def available(self) -> bool:
        return bool(self._token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/api",
                headers=self._headers,
                timeout=15.0,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def call_service(
        self,
        domain: str,
        service: str,
        data: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Call a Home Assistant service."""
        client = await self._get_client()
        resp = await client.post(
            f"/services/{domain}/{service}",
            json=data or {},
        )
        resp.raise_for_status()
        logger.info("service_called", domain=domain, service=service)
        return resp.json()

    async def create_notification(
        self, title: str, message: str, notification_id: str = ""
    ) -> None:
        """Show (or replace, when notification_id is reused) a persistent notification."""
        data: dict[str, Any] = {"title": title, "message": message}
        if notification_id:
            data["notification_id"] = notification_id
        await self.call_service("persistent_notification", "create", data)

"""
HTTP client for the outbound notification service (email / SMS / push delivery).

With no service URL configured the client runs in simulation mode and only
logs what it would have sent.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from app.core.errors import UpstreamDeliveryFailure

log = structlog.get_logger()


class NotificationServiceClient:
    def __init__(
        self,
        base_url: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/") if base_url else None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def simulated(self) -> bool:
        return self._base_url is None

    async def process(
        self,
        global_id: str,
        body: str,
        path_type: str,
        target: str,
        *,
        priority: bool = False,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Hand one message to the notification service."""
        if self._base_url is None:
            log.info(
                "notification_service.simulated",
                global_id=global_id,
                path_type=path_type,
                priority=priority,
            )
            return

        message = {
            "global_id": global_id,
            "type": path_type,
            "message": body,
            "target": target,
            "priority": priority,
            "data": data or {},
        }
        try:
            response = await self._client.post(f"{self._base_url}/messages", json=message)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning(
                "notification_service.failed",
                global_id=global_id,
                path_type=path_type,
                error=str(exc),
            )
            raise UpstreamDeliveryFailure(f"Notification service rejected {global_id}: {exc}") from exc

        log.info("notification_service.accepted", global_id=global_id, path_type=path_type)

    async def aclose(self) -> None:
        await self._client.aclose()

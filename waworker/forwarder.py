from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import httpx

from .metrics import WEBHOOK_DELIVERIES


LOGGER = logging.getLogger("waworker.forwarder")


class EventForwarder:
    """Fire-and-forget delivery of instance events to their webhooks.

    Delivery is at most once: a failed POST is logged, counted as
    ``dropped`` and forgotten. :meth:`forward` only schedules the delivery
    and returns immediately, so the caller never waits on the remote end.
    """

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        webhook_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._webhook_token = (webhook_token or "").strip() or None
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(timeout=timeout)
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def forward(
        self, instance_id: str, webhook_url: Optional[str], event: Dict[str, Any]
    ) -> Optional[asyncio.Task[bool]]:
        if not webhook_url:
            LOGGER.debug(
                "stage=webhook_skipped instance=%s event=%s reason=no_webhook",
                instance_id,
                event.get("type"),
            )
            return None
        task = asyncio.get_running_loop().create_task(
            self.deliver(webhook_url, instance_id, event),
            name=f"webhook-{instance_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def deliver(
        self, url: str, instance_id: str, event: Dict[str, Any]
    ) -> bool:
        headers = {"Content-Type": "application/json"}
        if self._webhook_token:
            headers["X-Webhook-Token"] = self._webhook_token
        payload = {"id": instance_id, "instanceId": instance_id, "event": event}
        event_type = event.get("type")
        try:
            response = await self._http.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            WEBHOOK_DELIVERIES.labels("dropped").inc()
            LOGGER.warning(
                "stage=webhook_dropped instance=%s event=%s error=%s",
                instance_id,
                event_type,
                exc.__class__.__name__,
            )
            return False
        if not response.is_success:
            WEBHOOK_DELIVERIES.labels("dropped").inc()
            LOGGER.warning(
                "stage=webhook_dropped instance=%s event=%s status=%s",
                instance_id,
                event_type,
                response.status_code,
            )
            return False
        WEBHOOK_DELIVERIES.labels("delivered").inc()
        LOGGER.info(
            "stage=webhook_delivered instance=%s event=%s", instance_id, event_type
        )
        return True

    async def drain(self, timeout: float = 5.0) -> None:
        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            WEBHOOK_DELIVERIES.labels("dropped").inc(len(still_running))
            LOGGER.warning("stage=webhook_drain_cancelled count=%s", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    async def aclose(self, timeout: float = 5.0) -> None:
        await self.drain(timeout)
        if self._owns_client:
            await self._http.aclose()


__all__ = ["EventForwarder"]

# file: services/progress_poller.py

import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from app.models.notification import NotificationStatus

logger = logging.getLogger(__name__)

IDLE = "idle"
POLLING = "polling"
COMPLETED = "completed"
TIMED_OUT = "timed_out"

STATUS_PATH = "/api/notifications/send-batch"


class ProgressPoller:
    """
    Client-side watcher for a queued notification. Polls the status endpoint
    every `interval` seconds until the server reports a terminal status, then
    lingers for `grace_period` so the final state stays visible. Gives up after
    `max_duration` even if the server never finishes; the dispatch itself may
    still be running in that case.
    """

    def __init__(
        self,
        base_url: str,
        notification_id: int,
        interval: float = 2.0,
        max_duration: float = 300.0,
        grace_period: float = 5.0,
        on_update: Optional[Callable[[NotificationStatus], None]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.notification_id = notification_id
        self.interval = interval
        self.max_duration = max_duration
        self.grace_period = grace_period
        self.on_update = on_update
        self._client = client
        self.state = IDLE
        self.last_status: Optional[NotificationStatus] = None

    async def poll_once(self, client: httpx.AsyncClient) -> Optional[NotificationStatus]:
        try:
            response = await client.get(
                f"{self.base_url}{STATUS_PATH}", params={"id": str(self.notification_id)}, timeout=10
            )
        except httpx.RequestError as e:
            logger.error(f"Error polling notification status: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Status check for {self.notification_id} returned {response.status_code}")
            return None

        try:
            data = response.json()
            if not isinstance(data, dict) or not data.get("success") or not data.get("status"):
                return None
            return NotificationStatus.model_validate(data["status"])
        except ValueError as e:
            # JSONDecodeError and pydantic's ValidationError are both ValueErrors
            logger.warning(f"Unreadable status response for {self.notification_id}: {e}")
            return None

    async def run(self) -> str:
        if self._client is not None:
            return await self._run(self._client)
        async with httpx.AsyncClient() as client:
            return await self._run(client)

    async def _run(self, client: httpx.AsyncClient) -> str:
        self.state = POLLING
        deadline = time.monotonic() + self.max_duration

        while True:
            status = await self.poll_once(client)
            if status is not None:
                self.last_status = status
                if self.on_update is not None:
                    self.on_update(status)
                if status.status != "processing":
                    self.state = COMPLETED
                    await asyncio.sleep(self.grace_period)
                    return self.state

            if time.monotonic() + self.interval > deadline:
                self.state = TIMED_OUT
                logger.warning(f"Stopped polling notification {self.notification_id} after {self.max_duration}s")
                return self.state
            await asyncio.sleep(self.interval)

"""Build status notifications.

The core publishes a ``BuildStatusNotification`` after every committed
build update. Delivery runs in background tasks: a slow or failing handler
never delays or fails the update that produced the notification.

Handlers:
- ``log_build_status``: writes one log line per notification
- ``WebhookNotifier``: POSTs the payload to configured URLs (chat bots,
  status badges)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from conductor.models import BuildStatusNotification

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[BuildStatusNotification], Awaitable[None]]


class NotificationBus:
    """Fire-and-forget fan-out of ``build_status`` notifications."""

    def __init__(self):
        self._handlers: list[NotificationHandler] = []
        self._tasks: set[asyncio.Task] = set()

    def on(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def publish(self, notification: BuildStatusNotification) -> None:
        """Schedule every handler and return immediately."""
        for handler in self._handlers:
            task = asyncio.create_task(self._deliver(handler, notification))
            # Keep a reference so the task isn't garbage collected mid-flight
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(
        self, handler: NotificationHandler, notification: BuildStatusNotification
    ) -> None:
        try:
            await handler(notification)
        except Exception:
            logger.exception(
                "build_status handler %s failed for build %s",
                getattr(handler, "__name__", handler),
                notification.build.get("id"),
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def log_build_status(notification: BuildStatusNotification) -> None:
    logger.info(
        "build_status: build %s (%s) → %s %s",
        notification.build.get("id"),
        notification.job_name,
        notification.status.value,
        notification.build_link,
    )


class WebhookNotifier:
    """POST each notification as JSON to every configured URL."""

    def __init__(self, urls: list[str], timeout: float = 10.0):
        self.urls = urls
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __call__(self, notification: BuildStatusNotification) -> None:
        if self._client is None:
            raise RuntimeError("WebhookNotifier not started")

        body = {"type": "build_status", **notification.model_dump(mode="json")}
        for url in self.urls:
            try:
                resp = await self._client.post(url, json=body)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning("build_status delivery to %s failed: %s", url, e)

"""Notification sink — best-effort, asynchronous status fan-out.

The scheduler calls ``NotificationSink.notify()`` at terminal transitions;
the call only enqueues. A background worker delivers each notification to
every channel with a bounded number of retries, then drops it with a log
record. Delivery never feeds back into run or job state.

Key exports:
    Notification — Payload with enough context to render a chat message.
    NotificationSink — Queue + delivery worker.
    WebhookChannel — HTTP POST channel (chat webhooks).
    LogChannel — Writes notifications to the log.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Literal, Protocol

import httpx
from pydantic import BaseModel, Field

from gantry.pipeline.errors import NotificationDeliveryError

logger = logging.getLogger("gantry.pipeline.notifications")

_STATUS_EMOJI = {
    "succeeded": "✅",
    "failed": "❌",
    "cancelled": "🚫",
    "skipped": "⏭️",
    "waiting_approval": "⏸️",
}


class Notification(BaseModel):
    """A run, job, or approval status change."""

    kind: Literal["run", "job", "approval"]
    run_id: str
    workflow: str
    status: str
    job_id: str | None = None
    actor: str = ""
    ref: str = ""
    message: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def text(self) -> str:
        """Human-readable one-liner for chat channels."""
        emoji = _STATUS_EMOJI.get(self.status, "ℹ️")
        subject = f"job '{self.job_id}'" if self.job_id else "run"
        if self.kind == "approval":
            line = f"{emoji} [{self.workflow}] {subject} is waiting for approval"
        else:
            line = f"{emoji} [{self.workflow}] {subject} {self.status}"
        details = [f"run {self.run_id}"]
        if self.ref:
            details.append(f"ref {self.ref}")
        if self.actor:
            details.append(f"by {self.actor}")
        line = f"{line} ({', '.join(details)})"
        if self.message:
            line = f"{line}: {self.message}"
        return line


class NotificationChannel(Protocol):
    """Destination for notifications. ``send`` raises NotificationDeliveryError."""

    name: str

    async def send(self, notification: Notification) -> None: ...


class WebhookChannel:
    """POSTs notifications as JSON to a webhook URL (Slack/Teams-compatible ``text``)."""

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient,
        *,
        name: str = "webhook",
        headers: dict[str, str] | None = None,
    ):
        self.url = url
        self.name = name
        self._client = client
        self._headers = headers or {}

    async def send(self, notification: Notification) -> None:
        body = {"text": notification.text, **notification.model_dump(mode="json")}
        try:
            response = await self._client.post(self.url, json=body, headers=self._headers)
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(f"{self.name}: {exc!r}") from exc
        if response.status_code >= 400:
            raise NotificationDeliveryError(
                f"{self.name}: HTTP {response.status_code} from {self.url}"
            )


class LogChannel:
    """Writes notifications to the ``gantry.notifications`` logger."""

    name = "log"

    def __init__(self) -> None:
        self._logger = logging.getLogger("gantry.notifications")

    async def send(self, notification: Notification) -> None:
        self._logger.info("%s", notification.text)


class NotificationSink:
    """Queues notifications and delivers them in the background."""

    def __init__(
        self,
        channels: list[NotificationChannel] | None = None,
        *,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        queue_size: int = 1000,
    ):
        self._channels: list[NotificationChannel] = list(channels or [])
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None
        self.dropped = 0

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def add_channel(self, channel: NotificationChannel) -> None:
        self._channels.append(channel)

    def notify(self, notification: Notification) -> None:
        """Enqueue a notification. Never blocks and never raises."""
        if not self._channels:
            return
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Notification queue full, dropping %s notification for run %s",
                notification.kind,
                notification.run_id,
            )

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._worker(), name="notification-sink")
            logger.info("Notification sink started (%d channel(s))", len(self._channels))

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        """Stop the worker, giving queued notifications a chance to go out."""
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Notification sink stopped with %d undelivered notification(s)",
                self._queue.qsize(),
            )
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Notification sink stopped")

    async def flush(self) -> None:
        """Wait until every queued notification has been handled."""
        await self._queue.join()

    async def _worker(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                for channel in self._channels:
                    await self._deliver(channel, notification)
            except Exception:
                logger.exception("Error delivering notification for run %s", notification.run_id)
            finally:
                self._queue.task_done()

    async def _deliver(self, channel: NotificationChannel, notification: Notification) -> bool:
        """Send with bounded retries and exponential backoff. Returns False if dropped."""
        attempts = 1 + self._max_retries
        for attempt in range(attempts):
            try:
                await channel.send(notification)
                return True
            except NotificationDeliveryError as exc:
                if attempt + 1 < attempts:
                    delay = self._retry_backoff * (2**attempt)
                    logger.debug(
                        "Notification via %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        channel.name,
                        attempt + 1,
                        attempts,
                        delay,
                        exc,
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.warning(
                        "Dropping %s notification for run %s via %s after %d attempt(s): %s",
                        notification.kind,
                        notification.run_id,
                        channel.name,
                        attempts,
                        exc,
                    )
        self.dropped += 1
        return False

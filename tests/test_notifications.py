"""Tests for the notification sink and channels."""

from __future__ import annotations

import json
import logging

import httpx
import pytest
import respx

from gantry.pipeline.errors import NotificationDeliveryError
from gantry.pipeline.notifications import (
    LogChannel,
    Notification,
    NotificationSink,
    WebhookChannel,
)

HOOK_URL = "https://chat.example.com/hooks/abc"


def make_notification(**overrides) -> Notification:
    defaults = dict(
        kind="run",
        run_id="run-1",
        workflow="deploy",
        status="failed",
        actor="alice",
        ref="refs/heads/main",
        message="Job 'build' failed: Step 'Build' failed: Command exited with code 2",
    )
    defaults.update(overrides)
    return Notification(**defaults)


class RecordingChannel:
    """Fails the first ``failures`` sends, then records notifications."""

    def __init__(self, failures: int = 0, name: str = "recording"):
        self.name = name
        self.failures = failures
        self.attempts = 0
        self.received: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise NotificationDeliveryError(f"{self.name}: unavailable")
        self.received.append(notification)


class TestNotificationText:
    def test_run_text(self):
        text = make_notification().text
        assert text.startswith("❌ [deploy] run failed (run run-1, ref refs/heads/main, by alice)")
        assert text.endswith("Command exited with code 2")

    def test_job_text(self):
        text = make_notification(kind="job", job_id="deploy-prod", status="succeeded", message="").text
        assert text == "✅ [deploy] job 'deploy-prod' succeeded (run run-1, ref refs/heads/main, by alice)"

    def test_approval_text(self):
        text = make_notification(
            kind="approval", job_id="approve", status="waiting_approval", actor="", ref="", message=""
        ).text
        assert text == "⏸️ [deploy] job 'approve' is waiting for approval (run run-1)"


class TestWebhookChannel:
    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_json(self):
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        async with httpx.AsyncClient() as client:
            channel = WebhookChannel(HOOK_URL, client)
            await channel.send(make_notification())

        body = json.loads(route.calls.last.request.content)
        assert body["text"].startswith("❌ [deploy] run failed")
        assert body["run_id"] == "run-1"
        assert body["status"] == "failed"

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_raises(self):
        respx.post(HOOK_URL).mock(return_value=httpx.Response(500))
        async with httpx.AsyncClient() as client:
            channel = WebhookChannel(HOOK_URL, client)
            with pytest.raises(NotificationDeliveryError, match="HTTP 500"):
                await channel.send(make_notification())

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_raises(self):
        respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("refused"))
        async with httpx.AsyncClient() as client:
            channel = WebhookChannel(HOOK_URL, client)
            with pytest.raises(NotificationDeliveryError):
                await channel.send(make_notification())


class TestLogChannel:
    @pytest.mark.asyncio
    async def test_logs_text(self, caplog):
        with caplog.at_level(logging.INFO, logger="gantry.notifications"):
            await LogChannel().send(make_notification())
        assert "[deploy] run failed" in caplog.text


class TestNotificationSink:
    @pytest.mark.asyncio
    async def test_delivers_to_every_channel(self):
        first, second = RecordingChannel(name="a"), RecordingChannel(name="b")
        sink = NotificationSink([first, second], retry_backoff=0.001)
        await sink.start()
        try:
            sink.notify(make_notification(run_id="run-1"))
            sink.notify(make_notification(run_id="run-2"))
            await sink.flush()
        finally:
            await sink.stop()

        assert [n.run_id for n in first.received] == ["run-1", "run-2"]
        assert [n.run_id for n in second.received] == ["run-1", "run-2"]
        assert sink.dropped == 0

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        channel = RecordingChannel(failures=2)
        sink = NotificationSink([channel], max_retries=3, retry_backoff=0.001)
        await sink.start()
        try:
            sink.notify(make_notification())
            await sink.flush()
        finally:
            await sink.stop()

        assert channel.attempts == 3
        assert len(channel.received) == 1

    @pytest.mark.asyncio
    async def test_drops_after_bounded_retries(self):
        channel = RecordingChannel(failures=100)
        sink = NotificationSink([channel], max_retries=2, retry_backoff=0.001)
        await sink.start()
        try:
            sink.notify(make_notification())
            await sink.flush()
        finally:
            await sink.stop()

        assert channel.attempts == 3
        assert channel.received == []
        assert sink.dropped == 1

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self):
        broken = RecordingChannel(failures=100, name="broken")
        healthy = RecordingChannel(name="healthy")
        sink = NotificationSink([broken, healthy], max_retries=0)
        await sink.start()
        try:
            sink.notify(make_notification())
            await sink.flush()
        finally:
            await sink.stop()

        assert len(healthy.received) == 1
        assert sink.dropped == 1

    def test_notify_without_channels_is_noop(self):
        sink = NotificationSink()
        sink.notify(make_notification())
        assert sink.dropped == 0

    def test_full_queue_drops(self):
        sink = NotificationSink([RecordingChannel()], queue_size=1)
        sink.notify(make_notification(run_id="run-1"))
        sink.notify(make_notification(run_id="run-2"))
        assert sink.dropped == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        sink = NotificationSink([RecordingChannel()])
        await sink.stop()

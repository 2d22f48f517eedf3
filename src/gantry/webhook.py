"""Webhook receiver — FastAPI endpoint for source-control deliveries.

Validates HMAC-SHA256 signatures, repository scope and rate limits before
enqueuing events for the Event Router. Responds immediately; runs are
created asynchronously by the router.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response

from gantry.models import SourceEvent
from gantry.security import verify_webhook_signature

if TYPE_CHECKING:
    import asyncio

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_event_queue: asyncio.Queue[SourceEvent] | None = None
_webhook_secret: str | None = None
_expected_repository: str | None = None


class SlidingWindowLimiter:
    """Admit at most ``limit`` deliveries per ``window`` seconds (0 = unlimited)."""

    def __init__(self, limit: int, window: float = 60.0, clock=time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: deque[float] = deque()

    def admit(self) -> bool:
        if self.limit <= 0:
            return True
        now = self._clock()
        while self._hits and self._hits[0] <= now - self.window:
            self._hits.popleft()
        if len(self._hits) >= self.limit:
            return False
        self._hits.append(now)
        return True


_limiter = SlidingWindowLimiter(60)


def configure(
    event_queue: asyncio.Queue[SourceEvent],
    *,
    webhook_secret: str | None = None,
    expected_repository: str | None = None,
    rate_limit_max: int = 60,
) -> None:
    """Wire the webhook endpoint to the event queue.

    Args:
        event_queue: Queue consumed by the EventRouter.
        webhook_secret: Shared HMAC secret; None disables signature checks.
        expected_repository: If set, reject deliveries for other repos (owner/repo).
        rate_limit_max: Max webhook deliveries per minute (0 = unlimited).
    """
    global _event_queue, _webhook_secret, _expected_repository, _limiter
    _event_queue = event_queue
    _webhook_secret = webhook_secret
    _expected_repository = expected_repository
    _limiter = SlidingWindowLimiter(rate_limit_max)


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive and enqueue a source-control delivery.

    Checks (in order): rate limit, signature, payload shape, repository
    scope. Accepted deliveries are enqueued and answered with 202.
    """
    if not _limiter.admit():
        logger.warning("Rate limited delivery %s (%s)", x_github_delivery, x_github_event)
        return Response(status_code=429, content="Too many deliveries")

    body = await request.body()

    if not verify_webhook_signature(body, x_hub_signature_256, _webhook_secret):
        logger.warning("Signature mismatch on delivery %s", x_github_delivery)
        return Response(status_code=401, content="Bad signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        return Response(status_code=400, content="Invalid JSON payload")
    if not isinstance(payload, dict):
        return Response(status_code=400, content="Payload must be a JSON object")

    if _expected_repository:
        webhook_repo = (payload.get("repository") or {}).get("full_name", "")
        if webhook_repo and webhook_repo != _expected_repository:
            logger.warning(
                "Rejected delivery %s for repository %s (serving %s)",
                x_github_delivery,
                webhook_repo,
                _expected_repository,
            )
            return Response(status_code=403, content="Repository not served")

    event = SourceEvent(
        delivery_id=x_github_delivery,
        event_type=x_github_event,
        payload=payload,
    )
    if _event_queue is None:
        logger.error("No event queue, refusing delivery %s", x_github_delivery)
        return Response(status_code=503, content="Not ready")

    await _event_queue.put(event)
    logger.info(
        "Queued %s delivery %s from %s", event.event_type, x_github_delivery, event.sender or "-"
    )

    return Response(status_code=202, content="accepted")

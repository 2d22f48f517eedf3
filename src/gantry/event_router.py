"""Event Router — consumes raw source-control deliveries and starts runs.

Runs as an async consumer loop. Handles:
- Webhook deduplication (delivery UUID)
- Ignoring events from configured bot accounts
- Source event → TriggerEvent conversion
- Handing trigger events to the pipeline engine
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from gantry.models import SourceEvent

if TYPE_CHECKING:
    from gantry.pipeline.engine import PipelineEngine
    from gantry.pipeline.models import Run
    from gantry.pipeline.store import RunStateStore

logger = logging.getLogger(__name__)


class EventRouter:
    """Async consumer loop that routes source events to the engine."""

    def __init__(
        self,
        event_queue: asyncio.Queue[SourceEvent],
        store: RunStateStore,
        engine: PipelineEngine,
        *,
        ignored_senders: set[str] | None = None,
    ):
        self.event_queue = event_queue
        self.store = store
        self.engine = engine
        self.ignored_senders = ignored_senders or set()

        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the event consumer loop."""
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="event-router")
        logger.info("Event router started")

    async def stop(self) -> None:
        """Stop the event consumer loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Event router stopped")

    async def _consumer_loop(self) -> None:
        """Main consumer loop — dequeue and route events."""
        while self._running:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self.route_event(event)
            except Exception:
                logger.exception("Error routing event %s", event.delivery_id)

    async def route_event(self, event: SourceEvent) -> list[Run]:
        """Route a single delivery. Returns the runs it started."""
        # 1. Ignored senders (e.g. our own bot pushing tags)
        if event.sender and event.sender in self.ignored_senders:
            logger.debug("Filtered event from ignored sender %s", event.sender)
            return []

        # 2. Webhook deduplication
        if await self.store.has_seen_event(event.delivery_id):
            logger.debug("Duplicate event filtered: %s", event.delivery_id)
            return []
        await self.store.mark_event_seen(event.delivery_id, event.event_type)

        # 3. Normalize
        trigger_event = event.to_trigger_event()
        if trigger_event is None:
            logger.debug("Unhandled event type: %s", event.event_type)
            return []

        # 4. Start matching workflows
        runs = await self.engine.evaluate_event(trigger_event)
        if runs:
            logger.info(
                "Event %s (%s) started %d run(s): %s",
                event.delivery_id,
                event.event_type,
                len(runs),
                ", ".join(r.run_id for r in runs),
            )
        return runs

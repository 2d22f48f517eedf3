"""Trigger evaluator — turns incoming events into runs.

Each registered workflow whose trigger matches an event yields its own Run,
persisted with every job Pending before the evaluator returns it. An event
that matches nothing yields an empty list.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from gantry.models import EventKind, TriggerEvent
from gantry.pipeline.graph import WorkflowGraph
from gantry.pipeline.models import JobExecution, Run, RunStatus
from gantry.pipeline.store import RunStateStore

logger = logging.getLogger("gantry.pipeline.triggers")


class TriggerEvaluator:
    """Matches events against the triggers of registered workflows."""

    def __init__(self, store: RunStateStore):
        self._store = store
        self._workflows: dict[str, WorkflowGraph] = {}

    # ── Registration ─────────────────────────────────────────────────────────

    def register(self, graph: WorkflowGraph) -> None:
        """Register (or replace) a validated workflow."""
        self._workflows[graph.name] = graph

    def unregister(self, name: str) -> None:
        self._workflows.pop(name, None)

    def get(self, name: str) -> WorkflowGraph | None:
        return self._workflows.get(name)

    @property
    def workflows(self) -> dict[str, WorkflowGraph]:
        return dict(self._workflows)

    # ── Evaluation ───────────────────────────────────────────────────────────

    def matching(self, event: TriggerEvent) -> list[WorkflowGraph]:
        """Workflows whose trigger accepts ``event``, in registration order."""
        matched: list[WorkflowGraph] = []
        for name, graph in self._workflows.items():
            if event.kind == EventKind.MANUAL and event.workflow and event.workflow != name:
                continue
            if graph.definition.trigger.matches(event):
                matched.append(graph)
        return matched

    async def evaluate(self, event: TriggerEvent) -> list[Run]:
        """Create and persist one Run per matching workflow."""
        runs = [await self.create_run(graph, event) for graph in self.matching(event)]
        if not runs:
            logger.debug("Event %s on '%s' matched no workflow", event.kind.value, event.ref)
        return runs

    async def create_run(self, graph: WorkflowGraph, event: TriggerEvent) -> Run:
        """Build a Run bound to ``graph`` with every job Pending, and persist it."""
        run_id = f"run-{uuid.uuid4().hex[:12]}"
        run = Run(
            run_id=run_id,
            workflow_name=graph.name,
            definition_snapshot=graph.definition.model_dump_json(by_alias=True, exclude_none=True),
            event_kind=event.kind.value,
            ref=event.ref,
            actor=event.actor,
            repository=event.repository,
            commit=event.commit,
            delivery_id=event.delivery_id,
            status=RunStatus.PENDING,
            jobs={
                job_id: JobExecution(run_id=run_id, job_id=job_id)
                for job_id in graph.topological_order()
            },
            created_at=datetime.now(timezone.utc),
        )
        await self._store.put(run)
        logger.info(
            "Created run %s of workflow '%s' (%s on '%s' by %s)",
            run_id,
            graph.name,
            event.kind.value,
            event.ref or "-",
            event.actor or "-",
        )
        return run

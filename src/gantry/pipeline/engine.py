"""Pipeline engine — the facade the server, CLI and tests drive.

Owns the registered workflows and wires the trigger evaluator, job
scheduler, approval gate and notification sink together.

Key exports:
    PipelineEngine — add_workflow(), evaluate_event(), dispatch(),
        resolve_approval(), cancel_run(), wait_for_run(), recover_active_runs().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import pydantic

from gantry.models import EventKind, TriggerEvent
from gantry.pipeline.approvals import ApprovalGate
from gantry.pipeline.errors import ValidationError
from gantry.pipeline.executor import StepExecutor
from gantry.pipeline.graph import WorkflowGraph, validate
from gantry.pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
    Run,
    RunStatus,
    WorkflowDefinition,
)
from gantry.pipeline.notifications import NotificationSink
from gantry.pipeline.scheduler import JobScheduler
from gantry.pipeline.store import RunStateStore
from gantry.pipeline.triggers import TriggerEvaluator

logger = logging.getLogger("gantry.pipeline.engine")


class PipelineEngine:
    """Core pipeline orchestration engine.

    Responsibilities:
        - Validate and register workflow definitions
        - Turn trigger events and manual dispatches into runs
        - Hand runs to the scheduler and route approval decisions to it
        - Expire overdue approval requests in the background
        - Resume runs that were active when the process stopped

    Usage:
        engine = PipelineEngine(store, executor, notifier=notifier)
        engine.add_workflow(definition)
        await engine.start()
        runs = await engine.evaluate_event(event)
        await engine.wait_for_run(runs[0].run_id)
    """

    def __init__(
        self,
        store: RunStateStore,
        executor: StepExecutor,
        *,
        approvals: ApprovalGate | None = None,
        notifier: NotificationSink | None = None,
        max_concurrent_jobs: int = 4,
        default_job_timeout: str | None = None,
        approval_sweep_interval: float = 30.0,
    ):
        self._store = store
        self._approvals = approvals or ApprovalGate(store)
        self._notifier = notifier
        self._triggers = TriggerEvaluator(store)
        self._scheduler = JobScheduler(
            store,
            executor,
            self._approvals,
            notifier,
            max_concurrent_jobs=max_concurrent_jobs,
            default_job_timeout=default_job_timeout,
        )
        self._sweep_interval = approval_sweep_interval
        self._sweeper: asyncio.Task | None = None

    @property
    def store(self) -> RunStateStore:
        return self._store

    @property
    def scheduler(self) -> JobScheduler:
        return self._scheduler

    @property
    def approvals(self) -> ApprovalGate:
        return self._approvals

    # ── Configuration ────────────────────────────────────────────────────────

    def add_workflow(
        self,
        definition: WorkflowGraph | WorkflowDefinition | Mapping[str, Any],
        *,
        name: str | None = None,
    ) -> WorkflowGraph:
        """Validate and register a workflow. Raises ValidationError if invalid."""
        graph = definition if isinstance(definition, WorkflowGraph) else validate(definition, name=name)
        if self._triggers.get(graph.name) is not None:
            logger.info("Replacing workflow '%s'", graph.name)
        self._triggers.register(graph)
        return graph

    def remove_workflow(self, name: str) -> None:
        self._triggers.unregister(name)

    def get_workflow(self, name: str) -> WorkflowGraph | None:
        return self._triggers.get(name)

    def list_workflows(self) -> list[WorkflowGraph]:
        return list(self._triggers.workflows.values())

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def evaluate_event(self, event: TriggerEvent) -> list[Run]:
        """Start a run for every workflow whose trigger matches ``event``."""
        runs = await self._triggers.evaluate(event)
        for run in runs:
            graph = self._triggers.get(run.workflow_name)
            if graph is not None:
                await self._scheduler.start_run(run, graph)
        return runs

    async def dispatch(
        self,
        name: str,
        *,
        actor: str = "",
        ref: str = "",
        commit: str | None = None,
        repository: str = "",
        inputs: dict[str, str] | None = None,
    ) -> Run | None:
        """Start a named workflow manually, regardless of its trigger.

        Returns the Run or None if the workflow name is unknown.
        """
        graph = self._triggers.get(name)
        if graph is None:
            logger.error("Unknown workflow: '%s'", name)
            return None

        event = TriggerEvent(
            kind=EventKind.MANUAL,
            ref=ref,
            actor=actor,
            commit=commit,
            repository=repository,
            workflow=name,
            inputs=inputs or {},
        )
        run = await self._triggers.create_run(graph, event)
        await self._scheduler.start_run(run, graph)
        return run

    async def get_run(self, run_id: str) -> Run | None:
        return await self._store.get(run_id)

    async def list_runs(
        self,
        *,
        workflow_name: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[Run]:
        return await self._store.list_runs(workflow_name=workflow_name, status=status, limit=limit)

    async def wait_for_run(self, run_id: str, timeout: float | None = None) -> Run | None:
        """Block until the run is terminal. Raises TimeoutError on timeout."""
        return await self._scheduler.wait(run_id, timeout=timeout)

    async def cancel_run(self, run_id: str) -> bool:
        """Cancel a run. Returns True if it was active and is now cancelled."""
        return await self._scheduler.cancel_run(run_id)

    # ── Approvals ────────────────────────────────────────────────────────────

    async def resolve_approval(
        self,
        run_id: str,
        job_id: str,
        decision: ApprovalDecision,
        *,
        actor: str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        """Record a human decision and let the scheduler act on it.

        Raises:
            KeyError: unknown run, or the job is not an approval job.
            ApprovalForbidden: ``actor`` is not an allowed approver.
            ApprovalConflict: the request was already resolved.
        """
        run = await self._store.get(run_id)
        if run is None:
            raise KeyError(f"Unknown run: {run_id}")

        graph = self._scheduler.graph_for(run_id) or validate(run.definition())
        job = graph.definition.get_job(job_id)
        if job is None or not job.is_approval:
            raise KeyError(f"Job '{job_id}' in run {run_id} is not an approval job")

        request = await self._approvals.resolve(
            run_id, job_id, decision, actor=actor, comment=comment, job=job
        )
        if self._scheduler.is_active(run_id):
            await self._scheduler.on_approval_resolved(request)
        elif not run.is_terminal:
            # Not scheduled in this process (e.g. recovery skipped); resuming
            # applies the decision that was just recorded
            await self._scheduler.resume_run(run, graph)
        return request

    async def approve(
        self, run_id: str, job_id: str, *, actor: str, comment: str | None = None
    ) -> ApprovalRequest:
        return await self.resolve_approval(
            run_id, job_id, ApprovalDecision.APPROVED, actor=actor, comment=comment
        )

    async def reject(
        self, run_id: str, job_id: str, *, actor: str, comment: str | None = None
    ) -> ApprovalRequest:
        return await self.resolve_approval(
            run_id, job_id, ApprovalDecision.REJECTED, actor=actor, comment=comment
        )

    async def expire_approvals(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Reject overdue approval requests and unblock their runs."""
        expired = await self._approvals.expire_overdue(now)
        for request in expired:
            await self._scheduler.on_approval_resolved(request)
        return expired

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._notifier is not None:
            await self._notifier.start()
        if self._sweep_interval > 0 and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="approval-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self._scheduler.shutdown()
        if self._notifier is not None:
            await self._notifier.stop()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                expired = await self.expire_approvals()
                if expired:
                    logger.info("Expired %d approval request(s)", len(expired))
            except Exception:
                logger.exception("Error expiring approval requests")

    # ── Recovery ─────────────────────────────────────────────────────────────

    async def recover_active_runs(self) -> int:
        """Resume runs that were active when the server stopped.

        Returns the number of runs recovered.
        """
        recovered = 0
        for run_id in await self._store.get_active_run_ids():
            if self._scheduler.is_active(run_id):
                continue
            run = await self._store.get(run_id)
            if run is None:
                continue

            try:
                graph = validate(run.definition())
            except (pydantic.ValidationError, ValidationError) as exc:
                logger.warning("Cannot recover run %s: invalid definition snapshot", run_id)
                run.status = RunStatus.FAILED
                run.error_message = f"Invalid definition snapshot: {exc}"
                run.completed_at = datetime.now(timezone.utc)
                await self._store.update_run(run)
                continue

            await self._scheduler.resume_run(run, graph)
            recovered += 1
            logger.info("Recovered run %s (workflow='%s')", run_id, run.workflow_name)

        return recovered

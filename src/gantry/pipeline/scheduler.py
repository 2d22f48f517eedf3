"""Job scheduler — drives runs through their workflow graph.

Readiness is re-evaluated on every job terminal transition and every
approval resolution. All state transitions of one run happen under that
run's lock, and every transition is a compare-and-swap against the store, so
a job can never be started twice or overwritten once terminal.

Job lifecycle:
    Pending → Ready → Running → Succeeded | Failed | Cancelled
    Pending → Ready → WaitingApproval → Running (approved) | Failed (rejected)
    Pending → Skipped (a ``when: success`` dependency did not succeed)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from gantry.pipeline.graph import WorkflowGraph
from gantry.pipeline.models import (
    ACTIVE_JOB_STATUSES,
    ApprovalDecision,
    ApprovalRequest,
    DependencyPolicy,
    JobExecution,
    JobSpec,
    JobStatus,
    Run,
    RunStatus,
    parse_duration_seconds,
)
from gantry.pipeline.notifications import Notification

if TYPE_CHECKING:
    from gantry.pipeline.approvals import ApprovalGate
    from gantry.pipeline.executor import StepExecutor
    from gantry.pipeline.notifications import NotificationSink
    from gantry.pipeline.store import RunStateStore

logger = logging.getLogger("gantry.pipeline.scheduler")

# Dependency outcomes that block a ``when: success`` job
_BLOCKING_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SKIPPED})


@dataclass
class _RunState:
    """In-memory bookkeeping for one active run."""

    run: Run
    graph: WorkflowGraph
    semaphore: asyncio.Semaphore
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    cancelled: bool = False


class JobScheduler:
    """Releases jobs whose dependencies are satisfied and tracks run completion.

    Usage:
        scheduler = JobScheduler(store, executor, approvals, notifier)
        await scheduler.start_run(run, graph)
        run = await scheduler.wait(run.run_id)
    """

    def __init__(
        self,
        store: RunStateStore,
        executor: StepExecutor,
        approvals: ApprovalGate,
        notifier: NotificationSink | None = None,
        *,
        max_concurrent_jobs: int = 4,
        default_job_timeout: str | None = None,
    ):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self._store = store
        self._executor = executor
        self._approvals = approvals
        self._notifier = notifier
        self._max_concurrent_jobs = max_concurrent_jobs
        self._default_timeout = (
            parse_duration_seconds(default_job_timeout) if default_job_timeout else None
        )
        self._runs: dict[str, _RunState] = {}

    # ── Run Lifecycle ────────────────────────────────────────────────────────

    def is_active(self, run_id: str) -> bool:
        return run_id in self._runs

    def active_run_ids(self) -> list[str]:
        return list(self._runs)

    def graph_for(self, run_id: str) -> WorkflowGraph | None:
        state = self._runs.get(run_id)
        return state.graph if state else None

    async def start_run(self, run: Run, graph: WorkflowGraph) -> None:
        """Begin scheduling a freshly created run."""
        state = self._attach(run, graph)
        async with state.lock:
            await self._mark_running(state)
            await self._reconcile(state)

    async def resume_run(self, run: Run, graph: WorkflowGraph) -> None:
        """Resume a run loaded from the store after a restart.

        Jobs that were Running are failed as interrupted. Ready jobs are
        dispatched again; WaitingApproval jobs keep waiting unless their
        request was already resolved.
        """
        state = self._attach(run, graph)
        async with state.lock:
            await self._mark_running(state)
            for job_id in graph.topological_order():
                execution = run.jobs.get(job_id)
                if execution is None:
                    execution = JobExecution(run_id=run.run_id, job_id=job_id)
                    run.jobs[job_id] = execution
                    await self._store.put(run)
                job = graph.job(job_id)

                match execution.status:
                    case JobStatus.RUNNING:
                        logger.warning(
                            "Job '%s' of run %s was running at restart, marking failed",
                            job_id,
                            run.run_id,
                        )
                        await self._finish_job(
                            state, job_id, JobStatus.RUNNING, JobStatus.FAILED,
                            "Interrupted by restart",
                        )
                    case JobStatus.READY:
                        if job.is_approval:
                            await self._open_approval(state, job)
                        else:
                            self._dispatch(state, job, JobStatus.READY)
                    case JobStatus.WAITING_APPROVAL:
                        request = await self._approvals.get(run.run_id, job_id)
                        if request is None:
                            request = await self._approvals.open(run.run_id, job)
                        if request.is_resolved:
                            await self._apply_decision(state, job, request)
            await self._reconcile(state)

    async def wait(self, run_id: str, timeout: float | None = None) -> Run | None:
        """Wait until a run is terminal and return its stored state."""
        state = self._runs.get(run_id)
        if state is not None:
            await asyncio.wait_for(state.done.wait(), timeout=timeout)
        return await self._store.get(run_id)

    async def cancel_run(self, run_id: str, *, reason: str = "Run cancelled") -> bool:
        """Cancel an active run. Returns False if it is unknown or already done.

        Every non-terminal job becomes Cancelled, pending approval requests
        are rejected, and running job tasks are cancelled (killing their
        step processes) before this returns.
        """
        state = self._runs.get(run_id)
        if state is None:
            return False

        async with state.lock:
            if state.cancelled or state.run.is_terminal:
                return False
            state.cancelled = True
            state.cancel_event.set()
            state.run.error_message = reason

            for job_id, execution in state.run.jobs.items():
                if execution.status not in ACTIVE_JOB_STATUSES:
                    continue
                was_running = execution.status == JobStatus.RUNNING
                swapped = await self._transition(
                    state, job_id, ACTIVE_JOB_STATUSES, JobStatus.CANCELLED, error_message=reason
                )
                if swapped and was_running:
                    self._notify_job(state, job_id)

            await self._approvals.reject_pending(run_id, reason=reason)
            tasks = list(state.tasks.values())
            for task in tasks:
                task.cancel()
            await self._maybe_finalize(state)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Run %s cancelled", run_id)
        return True

    async def on_approval_resolved(self, request: ApprovalRequest) -> None:
        """React to a resolved approval request (decision, expiry)."""
        state = self._runs.get(request.run_id)
        if state is None:
            return
        job = state.graph.job(request.job_id)
        async with state.lock:
            await self._apply_decision(state, job, request)

    async def shutdown(self) -> None:
        """Stop all job tasks without touching run state (server shutdown).

        Interrupted jobs stay Running in the store and are failed by
        ``resume_run`` on the next start.
        """
        tasks = [task for state in self._runs.values() for task in state.tasks.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()

    # ── Readiness ────────────────────────────────────────────────────────────

    async def _reconcile(self, state: _RunState) -> None:
        """Skip blocked jobs, release ready ones, then check for run completion.

        Walks jobs in topological order so a skip propagates to every
        descendant in a single pass. Caller holds ``state.lock``.
        """
        run, graph = state.run, state.graph
        for job_id in graph.topological_order():
            execution = run.jobs[job_id]
            if execution.status != JobStatus.PENDING:
                continue

            job = graph.job(job_id)
            needs = graph.needs(job_id)
            if job.when == DependencyPolicy.SUCCESS:
                blocker = next((n for n in needs if run.jobs[n].status in _BLOCKING_STATUSES), None)
                if blocker is not None:
                    await self._finish_job(
                        state,
                        job_id,
                        JobStatus.PENDING,
                        JobStatus.SKIPPED,
                        f"Dependency '{blocker}' {run.jobs[blocker].status.value}",
                        notify=False,
                    )
                    continue
                ready = all(run.jobs[n].status == JobStatus.SUCCEEDED for n in needs)
            else:
                ready = all(run.jobs[n].status.is_terminal for n in needs)

            if not ready:
                continue
            if not await self._transition(state, job_id, JobStatus.PENDING, JobStatus.READY):
                continue
            if job.is_approval:
                await self._open_approval(state, job)
            else:
                self._dispatch(state, job, JobStatus.READY)

        await self._maybe_finalize(state)

    async def _open_approval(self, state: _RunState, job: JobSpec) -> None:
        request = await self._approvals.open(state.run.run_id, job)
        if not await self._transition(
            state, job.id, JobStatus.READY, JobStatus.WAITING_APPROVAL
        ):
            return
        self._notify(
            state,
            "approval",
            JobStatus.WAITING_APPROVAL.value,
            job_id=job.id,
            message=job.approval.description if job.approval else "",
        )
        if request.is_resolved:
            await self._apply_decision(state, job, request)

    async def _apply_decision(
        self, state: _RunState, job: JobSpec, request: ApprovalRequest
    ) -> None:
        """Approved → run the job; Rejected → fail it. Caller holds ``state.lock``."""
        execution = state.run.jobs[job.id]
        if execution.status != JobStatus.WAITING_APPROVAL:
            return

        if request.decision == ApprovalDecision.APPROVED:
            self._dispatch(state, job, JobStatus.WAITING_APPROVAL)
        elif request.decision == ApprovalDecision.REJECTED:
            message = f"Approval rejected by {request.decided_by}"
            if request.comment:
                message = f"{message}: {request.comment}"
            await self._finish_job(
                state, job.id, JobStatus.WAITING_APPROVAL, JobStatus.FAILED, message
            )
            await self._reconcile(state)

    # ── Job Execution ────────────────────────────────────────────────────────

    def _dispatch(self, state: _RunState, job: JobSpec, from_status: JobStatus) -> None:
        task = asyncio.create_task(
            self._run_job(state, job, from_status),
            name=f"job-{state.run.run_id}-{job.id}",
        )
        state.tasks[job.id] = task

    async def _run_job(self, state: _RunState, job: JobSpec, from_status: JobStatus) -> None:
        run_id = state.run.run_id
        try:
            async with state.semaphore:
                async with state.lock:
                    if state.cancelled:
                        return
                    if not await self._transition(state, job.id, from_status, JobStatus.RUNNING):
                        return

                # The executor works on a scratch copy so readiness checks only
                # ever see statuses that are already in the store
                scratch = JobExecution(run_id=run_id, job_id=job.id, status=JobStatus.RUNNING)
                timeout = job.timeout_seconds() or self._default_timeout
                try:
                    if job.steps:
                        coro = self._executor.run(
                            state.run,
                            job,
                            scratch,
                            env=state.graph.definition.env,
                            cancel_event=state.cancel_event,
                        )
                        if timeout:
                            await asyncio.wait_for(coro, timeout=timeout)
                        else:
                            await coro
                    else:
                        scratch.status = JobStatus.SUCCEEDED
                    outcome, message = scratch.status, scratch.error_message
                except asyncio.TimeoutError:
                    outcome = JobStatus.CANCELLED
                    message = f"Timed out after {job.timeout or f'{timeout}s'}"
                    logger.warning("Job '%s' of run %s timed out", job.id, run_id)
                except Exception as exc:
                    logger.exception("Job '%s' of run %s crashed", job.id, run_id)
                    outcome, message = JobStatus.FAILED, f"Internal error: {exc}"

            async with state.lock:
                state.run.jobs[job.id].steps = scratch.steps
                await self._finish_job(state, job.id, JobStatus.RUNNING, outcome, message)
                await self._reconcile(state)
        finally:
            if state.tasks.get(job.id) is asyncio.current_task():
                state.tasks.pop(job.id, None)

    # ── Transitions ──────────────────────────────────────────────────────────

    async def _transition(
        self,
        state: _RunState,
        job_id: str,
        expected: JobStatus | Iterable[JobStatus],
        new: JobStatus,
        *,
        error_message: str | None = None,
    ) -> bool:
        """CAS a job's state in the store and mirror it in memory on success."""
        now = datetime.now(timezone.utc)
        started_at = now if new == JobStatus.RUNNING else None
        completed_at = now if new.is_terminal else None
        swapped = await self._store.compare_and_swap_job_state(
            state.run.run_id,
            job_id,
            expected,
            new,
            started_at=started_at,
            completed_at=completed_at,
            error_message=error_message,
        )
        if swapped:
            execution = state.run.jobs[job_id]
            execution.status = new
            if started_at:
                execution.started_at = started_at
            if completed_at:
                execution.completed_at = completed_at
            if error_message:
                execution.error_message = error_message
            logger.debug("Run %s job '%s' -> %s", state.run.run_id, job_id, new.value)
        return swapped

    async def _finish_job(
        self,
        state: _RunState,
        job_id: str,
        expected: JobStatus,
        outcome: JobStatus,
        message: str | None,
        *,
        notify: bool = True,
    ) -> None:
        swapped = await self._transition(
            state,
            job_id,
            expected,
            outcome,
            error_message=message if outcome != JobStatus.SUCCEEDED else None,
        )
        if not swapped:
            return
        logger.info(
            "Job '%s' of run %s %s%s",
            job_id,
            state.run.run_id,
            outcome.value,
            f": {message}" if message and outcome != JobStatus.SUCCEEDED else "",
        )
        if notify:
            self._notify_job(state, job_id)

    async def _mark_running(self, state: _RunState) -> None:
        run = state.run
        if run.status == RunStatus.PENDING:
            run.status = RunStatus.RUNNING
            run.started_at = datetime.now(timezone.utc)
            await self._store.update_run(run)

    async def _maybe_finalize(self, state: _RunState) -> None:
        """Close the run once no job can make further progress."""
        run = state.run
        if run.is_terminal:
            return
        if any(e.status in ACTIVE_JOB_STATUSES for e in run.jobs.values()):
            return

        if state.cancelled:
            run.status = RunStatus.CANCELLED
        else:
            failed = [
                job_id
                for job_id in state.graph.topological_order()
                if run.jobs[job_id].status in (JobStatus.FAILED, JobStatus.CANCELLED)
            ]
            if failed:
                first = min(
                    failed,
                    key=lambda j: (
                        run.jobs[j].completed_at or datetime.max.replace(tzinfo=timezone.utc),
                        state.graph.index_of(j),
                    ),
                )
                run.status = RunStatus.FAILED
                run.error_job_id = first
                run.error_message = f"Job '{first}' {run.jobs[first].status.value}: " + (
                    run.jobs[first].error_message or "no details"
                )
            else:
                run.status = RunStatus.SUCCEEDED

        run.completed_at = datetime.now(timezone.utc)
        await self._store.update_run(run)
        if run.status == RunStatus.FAILED:
            logger.error(
                "Run %s of '%s' failed at job '%s': %s",
                run.run_id,
                run.workflow_name,
                run.error_job_id,
                run.error_message,
            )
        else:
            logger.info("Run %s of '%s' %s", run.run_id, run.workflow_name, run.status.value)

        self._notify(state, "run", run.status.value, message=run.error_message or "")
        state.done.set()
        self._runs.pop(run.run_id, None)

    # ── Internals ────────────────────────────────────────────────────────────

    def _attach(self, run: Run, graph: WorkflowGraph) -> _RunState:
        if run.run_id in self._runs:
            raise ValueError(f"Run {run.run_id} is already being scheduled")
        state = _RunState(
            run=run,
            graph=graph,
            semaphore=asyncio.Semaphore(self._max_concurrent_jobs),
        )
        self._runs[run.run_id] = state
        return state

    def _notify_job(self, state: _RunState, job_id: str) -> None:
        execution = state.run.jobs[job_id]
        self._notify(
            state,
            "job",
            execution.status.value,
            job_id=job_id,
            message=execution.error_message or "",
        )

    def _notify(
        self,
        state: _RunState,
        kind: str,
        status: str,
        *,
        job_id: str | None = None,
        message: str = "",
    ) -> None:
        if self._notifier is None:
            return
        self._notifier.notify(
            Notification(
                kind=kind,
                run_id=state.run.run_id,
                workflow=state.run.workflow_name,
                status=status,
                job_id=job_id,
                actor=state.run.actor,
                ref=state.run.ref,
                message=message,
            )
        )

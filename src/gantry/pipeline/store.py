"""Run state store — SQLite persistence for runs, jobs, steps, and approvals.

Key exports:
    RunStateStore — get/put of whole runs, atomic compare-and-swap on a job's
        state, append-only step results, approval requests with a
        resolve-once conditional update, and webhook delivery dedup.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import aiosqlite

from gantry.pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
    JobExecution,
    JobStatus,
    Run,
    RunStatus,
    StepKind,
    StepResult,
)

logger = logging.getLogger("gantry.pipeline.store")


class RunStateStore:
    """SQLite-backed persistence for pipeline runs.

    Takes an already-open aiosqlite connection (with ``row_factory`` set to
    ``aiosqlite.Row``). Call ``initialize()`` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run state store tables initialized")

    async def close(self) -> None:
        await self._db.close()

    # ── Run CRUD ─────────────────────────────────────────────────────────────

    async def put(self, run: Run) -> None:
        """Insert or replace a run together with its job executions.

        Step results already stored are left untouched (append-only); new
        ones are appended.
        """
        await self._db.execute(
            """
            INSERT INTO runs (
                run_id, workflow_name, definition_snapshot,
                event_kind, ref, actor, repository, commit_sha, delivery_id,
                status, created_at, started_at, completed_at,
                error_message, error_job_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                status = excluded.status,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at,
                error_message = excluded.error_message,
                error_job_id = excluded.error_job_id
            """,
            (
                run.run_id,
                run.workflow_name,
                run.definition_snapshot,
                run.event_kind,
                run.ref,
                run.actor,
                run.repository,
                run.commit,
                run.delivery_id,
                run.status.value,
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
                run.error_job_id,
            ),
        )
        for job in run.jobs.values():
            await self._db.execute(
                """
                INSERT INTO job_executions (
                    run_id, job_id, status, started_at, completed_at, error_message
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, job_id) DO UPDATE SET
                    status = excluded.status,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at,
                    error_message = excluded.error_message
                """,
                (
                    run.run_id,
                    job.job_id,
                    job.status.value,
                    _dt_to_str(job.started_at),
                    _dt_to_str(job.completed_at),
                    job.error_message,
                ),
            )
            for step in job.steps:
                await self._insert_step(run.run_id, job.job_id, step, ignore_existing=True)
        await self._db.commit()

    async def get(self, run_id: str) -> Run | None:
        """Fetch a run with all its job executions and step results."""
        cursor = await self._db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None

        run = _row_to_run(row)
        cursor = await self._db.execute(
            "SELECT * FROM job_executions WHERE run_id = ? ORDER BY rowid", (run_id,)
        )
        for job_row in await cursor.fetchall():
            job = _row_to_job(job_row)
            run.jobs[job.job_id] = job

        cursor = await self._db.execute(
            "SELECT * FROM step_results WHERE run_id = ? ORDER BY job_id, step_index",
            (run_id,),
        )
        for step_row in await cursor.fetchall():
            job = run.jobs.get(step_row["job_id"])
            if job is not None:
                job.steps.append(_row_to_step(step_row))
        return run

    async def update_run(self, run: Run) -> None:
        """Update a run's mutable fields (not its jobs)."""
        await self._db.execute(
            """
            UPDATE runs SET
                status = ?, started_at = ?, completed_at = ?,
                error_message = ?, error_job_id = ?
            WHERE run_id = ?
            """,
            (
                run.status.value,
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
                run.error_job_id,
                run.run_id,
            ),
        )
        await self._db.commit()

    async def list_runs(
        self,
        *,
        workflow_name: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[Run]:
        """List runs newest first, without their jobs."""
        conditions: list[str] = []
        params: list[Any] = []
        if workflow_name:
            conditions.append("workflow_name = ?")
            params.append(workflow_name)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        cursor = await self._db.execute(
            f"SELECT * FROM runs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def get_active_run_ids(self) -> list[str]:
        """IDs of runs that are pending or running."""
        cursor = await self._db.execute(
            "SELECT run_id FROM runs WHERE status IN (?, ?) ORDER BY created_at",
            (RunStatus.PENDING.value, RunStatus.RUNNING.value),
        )
        rows = await cursor.fetchall()
        return [r["run_id"] for r in rows]

    async def delete_run(self, run_id: str) -> None:
        """Delete a run and all associated records (cascading)."""
        await self._db.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
        await self._db.commit()

    # ── Job State ────────────────────────────────────────────────────────────

    async def get_job(self, run_id: str, job_id: str) -> JobExecution | None:
        cursor = await self._db.execute(
            "SELECT * FROM job_executions WHERE run_id = ? AND job_id = ?",
            (run_id, job_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        job = _row_to_job(row)
        cursor = await self._db.execute(
            "SELECT * FROM step_results WHERE run_id = ? AND job_id = ? ORDER BY step_index",
            (run_id, job_id),
        )
        job.steps = [_row_to_step(r) for r in await cursor.fetchall()]
        return job

    async def compare_and_swap_job_state(
        self,
        run_id: str,
        job_id: str,
        expected: JobStatus | Iterable[JobStatus],
        new: JobStatus,
        *,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Atomically move a job to ``new`` if it is currently in ``expected``.

        Timestamps and the error message are only written when given.
        Returns True if this call performed the transition.
        """
        expected_values = (
            [expected.value]
            if isinstance(expected, JobStatus)
            else [status.value for status in expected]
        )
        placeholders = ", ".join("?" for _ in expected_values)
        cursor = await self._db.execute(
            f"""
            UPDATE job_executions SET
                status = ?,
                started_at = COALESCE(?, started_at),
                completed_at = COALESCE(?, completed_at),
                error_message = COALESCE(?, error_message)
            WHERE run_id = ? AND job_id = ? AND status IN ({placeholders})
            """,
            (
                new.value,
                _dt_to_str(started_at),
                _dt_to_str(completed_at),
                error_message,
                run_id,
                job_id,
                *expected_values,
            ),
        )
        await self._db.commit()
        swapped = cursor.rowcount == 1
        if not swapped:
            logger.debug(
                "CAS %s/%s %s -> %s lost", run_id, job_id, expected_values, new.value
            )
        return swapped

    async def append_step_result(self, run_id: str, job_id: str, result: StepResult) -> None:
        """Record a finished step. Raises if the step index was already recorded."""
        await self._insert_step(run_id, job_id, result, ignore_existing=False)
        await self._db.commit()

    async def _insert_step(
        self, run_id: str, job_id: str, step: StepResult, *, ignore_existing: bool
    ) -> None:
        verb = "INSERT OR IGNORE" if ignore_existing else "INSERT"
        await self._db.execute(
            f"""
            {verb} INTO step_results (
                run_id, job_id, step_index, name, kind,
                exit_code, success, continued, attempts,
                output_ref, output_tail, error_message,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                job_id,
                step.index,
                step.name,
                step.kind.value,
                step.exit_code,
                1 if step.success else 0,
                1 if step.continued else 0,
                step.attempts,
                step.output_ref,
                step.output_tail,
                step.error_message,
                _dt_to_str(step.started_at),
                _dt_to_str(step.completed_at),
            ),
        )

    # ── Approval Requests ────────────────────────────────────────────────────

    async def create_approval(self, request: ApprovalRequest) -> bool:
        """Insert an approval request. Returns False if one already exists."""
        cursor = await self._db.execute(
            """
            INSERT OR IGNORE INTO approval_requests (
                run_id, job_id, decision, requested_at, expires_at,
                decided_by, decided_at, comment
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.run_id,
                request.job_id,
                request.decision.value,
                _dt_to_str(request.requested_at),
                _dt_to_str(request.expires_at),
                request.decided_by,
                _dt_to_str(request.decided_at),
                request.comment,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def get_approval(self, run_id: str, job_id: str) -> ApprovalRequest | None:
        cursor = await self._db.execute(
            "SELECT * FROM approval_requests WHERE run_id = ? AND job_id = ?",
            (run_id, job_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_approval(row)

    async def resolve_approval(
        self,
        run_id: str,
        job_id: str,
        decision: ApprovalDecision,
        *,
        decided_by: str,
        decided_at: datetime,
        comment: str | None = None,
    ) -> bool:
        """Resolve a pending request. Only the first resolution succeeds."""
        cursor = await self._db.execute(
            """
            UPDATE approval_requests SET
                decision = ?, decided_by = ?, decided_at = ?, comment = ?
            WHERE run_id = ? AND job_id = ? AND decision = ?
            """,
            (
                decision.value,
                decided_by,
                _dt_to_str(decided_at),
                comment,
                run_id,
                job_id,
                ApprovalDecision.PENDING.value,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def get_pending_approvals(self, *, run_id: str | None = None) -> list[ApprovalRequest]:
        if run_id:
            cursor = await self._db.execute(
                "SELECT * FROM approval_requests WHERE decision = ? AND run_id = ? "
                "ORDER BY requested_at",
                (ApprovalDecision.PENDING.value, run_id),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM approval_requests WHERE decision = ? ORDER BY requested_at",
                (ApprovalDecision.PENDING.value,),
            )
        rows = await cursor.fetchall()
        return [_row_to_approval(r) for r in rows]

    async def get_expired_approvals(self, now: datetime) -> list[ApprovalRequest]:
        """Pending requests whose expiry is at or before ``now``."""
        cursor = await self._db.execute(
            "SELECT * FROM approval_requests WHERE decision = ? AND expires_at IS NOT NULL",
            (ApprovalDecision.PENDING.value,),
        )
        rows = await cursor.fetchall()
        expired = [_row_to_approval(r) for r in rows]
        expired = [req for req in expired if req.expires_at and req.expires_at <= now]
        return sorted(expired, key=lambda req: req.expires_at)

    # ── Webhook Dedup ────────────────────────────────────────────────────────

    async def has_seen_event(self, delivery_id: str) -> bool:
        cursor = await self._db.execute(
            "SELECT 1 FROM seen_events WHERE delivery_id = ?", (delivery_id,)
        )
        return await cursor.fetchone() is not None

    async def mark_event_seen(self, delivery_id: str, event_type: str) -> None:
        await self._db.execute(
            "INSERT OR IGNORE INTO seen_events (delivery_id, event_type) VALUES (?, ?)",
            (delivery_id, event_type),
        )
        await self._db.commit()


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    workflow_name TEXT NOT NULL,
    definition_snapshot TEXT NOT NULL DEFAULT '{}',

    event_kind TEXT NOT NULL DEFAULT 'manual',
    ref TEXT DEFAULT '',
    actor TEXT DEFAULT '',
    repository TEXT DEFAULT '',
    commit_sha TEXT,
    delivery_id TEXT,

    status TEXT DEFAULT 'pending',

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT,

    error_message TEXT,
    error_job_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_status
    ON runs(status);
CREATE INDEX IF NOT EXISTS idx_runs_workflow
    ON runs(workflow_name, created_at);

CREATE TABLE IF NOT EXISTS job_executions (
    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
    job_id TEXT NOT NULL,

    status TEXT DEFAULT 'pending',
    started_at TEXT,
    completed_at TEXT,
    error_message TEXT,

    PRIMARY KEY(run_id, job_id)
);

CREATE TABLE IF NOT EXISTS step_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
    job_id TEXT NOT NULL,
    step_index INTEGER NOT NULL,
    name TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'command',

    exit_code INTEGER,
    success INTEGER NOT NULL DEFAULT 0,
    continued INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER DEFAULT 1,

    output_ref TEXT,
    output_tail TEXT DEFAULT '',
    error_message TEXT,

    started_at TEXT,
    completed_at TEXT,

    UNIQUE(run_id, job_id, step_index)
);

CREATE TABLE IF NOT EXISTS approval_requests (
    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
    job_id TEXT NOT NULL,

    decision TEXT NOT NULL DEFAULT 'pending',
    requested_at TEXT NOT NULL,
    expires_at TEXT,
    decided_by TEXT,
    decided_at TEXT,
    comment TEXT,

    PRIMARY KEY(run_id, job_id)
);

CREATE INDEX IF NOT EXISTS idx_approval_requests_decision
    ON approval_requests(decision, expires_at);

CREATE TABLE IF NOT EXISTS seen_events (
    delivery_id TEXT PRIMARY KEY,
    event_type TEXT,
    received_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_run(row: aiosqlite.Row) -> Run:
    return Run(
        run_id=row["run_id"],
        workflow_name=row["workflow_name"],
        definition_snapshot=row["definition_snapshot"],
        event_kind=row["event_kind"],
        ref=row["ref"] or "",
        actor=row["actor"] or "",
        repository=row["repository"] or "",
        commit=row["commit_sha"],
        delivery_id=row["delivery_id"],
        status=RunStatus(row["status"]),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
        error_job_id=row["error_job_id"],
    )


def _row_to_job(row: aiosqlite.Row) -> JobExecution:
    return JobExecution(
        run_id=row["run_id"],
        job_id=row["job_id"],
        status=JobStatus(row["status"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _row_to_step(row: aiosqlite.Row) -> StepResult:
    return StepResult(
        index=row["step_index"],
        name=row["name"],
        kind=StepKind(row["kind"]),
        exit_code=row["exit_code"],
        success=bool(row["success"]),
        continued=bool(row["continued"]),
        attempts=row["attempts"] or 1,
        output_ref=row["output_ref"],
        output_tail=row["output_tail"] or "",
        error_message=row["error_message"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_approval(row: aiosqlite.Row) -> ApprovalRequest:
    return ApprovalRequest(
        run_id=row["run_id"],
        job_id=row["job_id"],
        decision=ApprovalDecision(row["decision"]),
        requested_at=_str_to_dt(row["requested_at"]),
        expires_at=_str_to_dt(row["expires_at"]),
        decided_by=row["decided_by"],
        decided_at=_str_to_dt(row["decided_at"]),
        comment=row["comment"],
    )

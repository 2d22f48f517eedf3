"""Approval gate — human-in-the-loop decisions for approval jobs.

An approval request is opened when an approval job becomes Ready and is
resolved exactly once: by a human decision, by expiry, or by run
cancellation. The store's conditional update decides which resolution wins
when two race; the loser sees ApprovalConflict.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from gantry.pipeline.errors import ApprovalConflict, ApprovalForbidden
from gantry.pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
    JobSpec,
    parse_duration_seconds,
)
from gantry.pipeline.store import RunStateStore

logger = logging.getLogger("gantry.pipeline.approvals")

EXPIRY_ACTOR = "gantry:expiry"
CANCEL_ACTOR = "gantry:cancel"


class ApprovalGate:
    """Opens, resolves and expires approval requests.

    ``default_expiry`` (a duration string such as ``"24h"``) applies to jobs
    whose ``approval.expires_in`` is unset. ``None`` means requests never
    expire unless the job says otherwise.
    """

    def __init__(self, store: RunStateStore, *, default_expiry: str | None = None):
        self._store = store
        self._default_expiry = default_expiry

    async def open(self, run_id: str, job: JobSpec) -> ApprovalRequest:
        """Open the approval request for ``job``. Idempotent per (run, job)."""
        now = datetime.now(timezone.utc)
        expires_in = (job.approval.expires_in if job.approval else None) or self._default_expiry
        request = ApprovalRequest(
            run_id=run_id,
            job_id=job.id,
            requested_at=now,
            expires_at=(
                now + timedelta(seconds=parse_duration_seconds(expires_in))
                if expires_in
                else None
            ),
        )
        created = await self._store.create_approval(request)
        if not created:
            existing = await self._store.get_approval(run_id, job.id)
            if existing is not None:
                return existing
        logger.info(
            "Approval requested for job '%s' in run %s%s",
            job.id,
            run_id,
            f" (expires {request.expires_at.isoformat()})" if request.expires_at else "",
        )
        return request

    async def get(self, run_id: str, job_id: str) -> ApprovalRequest | None:
        return await self._store.get_approval(run_id, job_id)

    async def resolve(
        self,
        run_id: str,
        job_id: str,
        decision: ApprovalDecision,
        *,
        actor: str,
        comment: str | None = None,
        job: JobSpec | None = None,
    ) -> ApprovalRequest:
        """Record a decision on a pending request.

        Raises:
            KeyError: no request exists for (run_id, job_id).
            ApprovalForbidden: ``actor`` is not in the job's approver allowlist.
            ApprovalConflict: the request was already resolved.
        """
        if decision == ApprovalDecision.PENDING:
            raise ValueError("A decision must be approved or rejected")

        request = await self._store.get_approval(run_id, job_id)
        if request is None:
            raise KeyError(f"No approval request for job '{job_id}' in run {run_id}")
        if request.is_resolved:
            raise ApprovalConflict(request)

        if job is not None and job.approval and job.approval.approvers:
            if actor not in job.approval.approvers:
                raise ApprovalForbidden(
                    f"'{actor}' may not decide approval for job '{job_id}'. "
                    f"Allowed: {job.approval.approvers}"
                )

        decided_at = datetime.now(timezone.utc)
        won = await self._store.resolve_approval(
            run_id,
            job_id,
            decision,
            decided_by=actor,
            decided_at=decided_at,
            comment=comment,
        )
        if not won:
            # Lost a race with another resolution
            current = await self._store.get_approval(run_id, job_id)
            raise ApprovalConflict(current or request)

        request.decision = decision
        request.decided_by = actor
        request.decided_at = decided_at
        request.comment = comment
        logger.info(
            "Approval for job '%s' in run %s %s by %s",
            job_id,
            run_id,
            decision.value,
            actor,
        )
        return request

    async def expire_overdue(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Reject every pending request whose expiry has passed.

        Returns the requests this call resolved.
        """
        now = now or datetime.now(timezone.utc)
        expired: list[ApprovalRequest] = []
        for request in await self._store.get_expired_approvals(now):
            won = await self._store.resolve_approval(
                request.run_id,
                request.job_id,
                ApprovalDecision.REJECTED,
                decided_by=EXPIRY_ACTOR,
                decided_at=now,
                comment="Approval request expired",
            )
            if not won:
                continue
            request.decision = ApprovalDecision.REJECTED
            request.decided_by = EXPIRY_ACTOR
            request.decided_at = now
            request.comment = "Approval request expired"
            expired.append(request)
            logger.info(
                "Approval for job '%s' in run %s expired", request.job_id, request.run_id
            )
        return expired

    async def reject_pending(self, run_id: str, *, reason: str) -> list[ApprovalRequest]:
        """Reject every pending request of a run (used on cancellation)."""
        now = datetime.now(timezone.utc)
        rejected: list[ApprovalRequest] = []
        for request in await self._store.get_pending_approvals(run_id=run_id):
            won = await self._store.resolve_approval(
                run_id,
                request.job_id,
                ApprovalDecision.REJECTED,
                decided_by=CANCEL_ACTOR,
                decided_at=now,
                comment=reason,
            )
            if won:
                request.decision = ApprovalDecision.REJECTED
                request.decided_by = CANCEL_ACTOR
                request.decided_at = now
                request.comment = reason
                rejected.append(request)
        return rejected

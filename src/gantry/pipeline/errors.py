"""Pipeline error taxonomy.

Key exports:
    GantryError — Base class for all engine errors.
    ValidationError — Malformed workflow definition (raised before any run exists).
    StepFailure — A step finished unsuccessfully; local to its job.
    InfrastructureError — Tooling/network unavailable; retried by the executor.
    ApprovalConflict — A second decision on an already-resolved approval request.
    ApprovalForbidden — The deciding actor is not an allowed approver.
    NotificationDeliveryError — A channel rejected a notification.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gantry.pipeline.models import ApprovalRequest


class GantryError(Exception):
    """Base class for Gantry engine errors."""


class ValidationError(GantryError):
    """A workflow definition failed validation.

    ``job_id`` and ``edge`` point at the offending job / ``needs`` edge when
    the failure can be attributed to one.
    """

    def __init__(
        self,
        message: str,
        *,
        workflow: str | None = None,
        job_id: str | None = None,
        edge: tuple[str, str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.workflow = workflow
        self.job_id = job_id
        self.edge = edge

    def __str__(self) -> str:
        if self.workflow:
            return f"Workflow '{self.workflow}': {self.message}"
        return self.message


class StepFailure(GantryError):
    """A step exited non-zero or its action reported failure."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class InfrastructureError(GantryError):
    """The environment needed to run a step is unavailable (transient)."""


class ApprovalConflict(GantryError):
    """An approval request was already resolved; the new decision was ignored."""

    def __init__(self, request: ApprovalRequest):
        super().__init__(
            f"Approval for job '{request.job_id}' in run {request.run_id} "
            f"already resolved as '{request.decision.value}' by {request.decided_by}"
        )
        self.request = request


class ApprovalForbidden(GantryError):
    """The actor is not in the job's approver allowlist."""


class NotificationDeliveryError(GantryError):
    """A notification channel failed to accept a message."""

"""Pipeline Pydantic models — workflow definitions and runtime state.

Key exports:
    Definition models: WorkflowDefinition, TriggerDefinition, PushTrigger,
        JobSpec, StepSpec, ApprovalSpec
    Runtime state models: Run, RunStatus, JobExecution, JobStatus, StepResult,
        ApprovalRequest, ApprovalDecision
    Enums: StepKind, DependencyPolicy
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatch
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator, model_validator

if TYPE_CHECKING:
    from gantry.models import TriggerEvent


# ── Enums ────────────────────────────────────────────────────────────────────


class StepKind(str, Enum):
    """Closed set of step kinds the executor knows how to run."""

    COMMAND = "command"
    BUILD_IMAGE = "build-image"
    PUSH_IMAGE = "push-image"
    NOTIFY = "notify"
    SCRIPT = "script"


# Supported versions per named action (``uses: build-image@v1``)
ACTION_VERSIONS: dict[StepKind, frozenset[str]] = {
    StepKind.BUILD_IMAGE: frozenset({"v1"}),
    StepKind.PUSH_IMAGE: frozenset({"v1"}),
    StepKind.NOTIFY: frozenset({"v1"}),
    StepKind.SCRIPT: frozenset({"v1"}),
}

DEFAULT_ACTION_VERSION = "v1"


class DependencyPolicy(str, Enum):
    """When a job may start relative to its ``needs``."""

    SUCCESS = "success"  # all dependencies Succeeded
    ALWAYS = "always"  # all dependencies terminal, whatever the outcome


class RunStatus(str, Enum):
    """Run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class JobStatus(str, Enum):
    """Job execution lifecycle states."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)
ACTIVE_JOB_STATUSES = frozenset(
    {JobStatus.PENDING, JobStatus.READY, JobStatus.RUNNING, JobStatus.WAITING_APPROVAL}
)


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ── ID validation ────────────────────────────────────────────────────────────

JOB_ID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")


# ── Definition Models (parsed from YAML) ─────────────────────────────────────


class PushTrigger(BaseModel):
    """Branch/tag filters for push events. Patterns use shell-style globs."""

    branches: list[str] = []
    branches_ignore: list[str] = []
    tags: list[str] = []

    @field_validator("branches", "branches_ignore", "tags", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v if v is not None else []

    def matches(self, ref: str) -> bool:
        if ref.startswith("refs/tags/"):
            tag = ref.removeprefix("refs/tags/")
            return any(fnmatch(tag, pattern) for pattern in self.tags)

        branch = ref.removeprefix("refs/heads/")
        if any(fnmatch(branch, pattern) for pattern in self.branches_ignore):
            return False
        if not self.branches:
            # A tags-only filter never matches branch pushes
            return not self.tags
        return any(fnmatch(branch, pattern) for pattern in self.branches)


class TriggerDefinition(BaseModel):
    """Which events start a run of a workflow."""

    push: PushTrigger | None = None
    manual: bool = False
    schedule: list[str] = []

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        # Accept shorthand forms: "push" or ["push", "manual"]
        if isinstance(data, str):
            data = [data]
        if isinstance(data, list):
            data = {name: True for name in data}
        if not isinstance(data, dict):
            return data

        data = dict(data)
        if "workflow_dispatch" in data:
            data["manual"] = data.pop("workflow_dispatch") is not False
        if "push" in data and data["push"] in (None, True):
            data["push"] = {}
        if data.get("push") is False:
            data["push"] = None
        if data.get("manual") is None and "manual" in data:
            data["manual"] = True
        if isinstance(data.get("schedule"), str):
            data["schedule"] = [data["schedule"]]
        return data

    def matches(self, event: TriggerEvent) -> bool:
        """Check if an incoming event matches this trigger."""
        from gantry.models import EventKind

        match event.kind:
            case EventKind.PUSH:
                return self.push is not None and self.push.matches(event.ref)
            case EventKind.MANUAL:
                return self.manual
            case EventKind.SCHEDULE:
                if not self.schedule:
                    return False
                return event.schedule is None or event.schedule in self.schedule
        return False


class ApprovalSpec(BaseModel):
    """Marks a job as a human approval gate."""

    description: str = ""
    approvers: list[str] = []  # Empty = any authenticated actor may decide
    expires_in: str | None = None  # Duration string, e.g. "24h"

    @field_validator("expires_in")
    @classmethod
    def _validate_expiry(cls, v: str | None) -> str | None:
        if v is not None:
            parse_duration_seconds(v)
        return v


class StepSpec(BaseModel):
    """A single step: either a shell command (``run``) or a named action (``uses``)."""

    name: str = ""
    run: str | None = None
    uses: str | None = None
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")
    env: dict[str, str] = {}
    continue_on_failure: bool = False

    model_config = {"populate_by_name": True}

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        return _stringify_mapping(v)

    @model_validator(mode="after")
    def validate_step(self) -> StepSpec:
        if (self.run is None) == (self.uses is None):
            msg = "steps require exactly one of 'run' or 'uses'"
            raise ValueError(msg)
        if self.uses is not None:
            parse_action_ref(self.uses)
        return self

    @property
    def kind(self) -> StepKind:
        if self.uses is None:
            return StepKind.COMMAND
        return parse_action_ref(self.uses)[0]

    @property
    def version(self) -> str | None:
        if self.uses is None:
            return None
        return parse_action_ref(self.uses)[1]

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.run is not None:
            first_line = self.run.strip().splitlines()[0] if self.run.strip() else ""
            return first_line[:60]
        return self.uses or ""


class JobSpec(BaseModel):
    """A unit of work with its own dependency edges and worker allocation."""

    id: str
    name: str = ""
    runs_on: str = Field("default", alias="runs-on")
    needs: list[str] = []
    steps: list[StepSpec] = []
    approval: ApprovalSpec | None = None
    when: DependencyPolicy = DependencyPolicy.SUCCESS
    timeout: str | None = None
    env: dict[str, str] = {}

    model_config = {"populate_by_name": True}

    @field_validator("needs", mode="before")
    @classmethod
    def _coerce_needs(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v if v is not None else []

    @field_validator("approval", mode="before")
    @classmethod
    def _coerce_approval(cls, v: Any) -> Any:
        if v is True:
            return {}
        if v is False:
            return None
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        return _stringify_mapping(v)

    @model_validator(mode="after")
    def validate_job(self) -> JobSpec:
        if not JOB_ID_PATTERN.match(self.id):
            msg = f"Job ID '{self.id}' must match pattern {JOB_ID_PATTERN.pattern}"
            raise ValueError(msg)
        if self.approval is None and not self.steps:
            msg = f"Job '{self.id}': jobs without 'approval' require at least one step"
            raise ValueError(msg)
        if self.timeout is not None:
            parse_duration_seconds(self.timeout)
        # Preserve declaration order, drop repeats
        self.needs = list(dict.fromkeys(self.needs))
        return self

    @property
    def is_approval(self) -> bool:
        return self.approval is not None

    def timeout_seconds(self) -> int | None:
        if not self.timeout:
            return None
        return parse_duration_seconds(self.timeout)


class WorkflowDefinition(BaseModel):
    """Complete workflow definition parsed from YAML."""

    name: str
    description: str = ""
    trigger: TriggerDefinition = Field(default_factory=TriggerDefinition)
    env: dict[str, str] = {}
    jobs: dict[str, JobSpec] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        return _stringify_mapping(v)

    @field_validator("trigger", mode="before")
    @classmethod
    def _default_trigger(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("jobs", mode="before")
    @classmethod
    def _normalize_jobs(cls, v: Any) -> Any:
        """Accept jobs as a mapping (id → spec) or a list of specs with ``id``."""
        if isinstance(v, list):
            ids = [j.get("id") for j in v if isinstance(j, dict)]
            dupes = sorted({jid for jid in ids if jid is not None and ids.count(jid) > 1})
            if dupes:
                msg = f"Duplicate job IDs: {dupes}"
                raise ValueError(msg)
            mapping: dict[str, Any] = {}
            for job in v:
                if not isinstance(job, dict) or not job.get("id"):
                    msg = "jobs given as a list must each have an 'id'"
                    raise ValueError(msg)
                mapping[job["id"]] = job
            return mapping

        if isinstance(v, dict):
            normalized: dict[str, Any] = {}
            for job_id, spec in v.items():
                if isinstance(spec, dict):
                    declared = spec.get("id")
                    if declared is not None and declared != job_id:
                        msg = f"Job key '{job_id}' does not match its id '{declared}'"
                        raise ValueError(msg)
                    spec = {**spec, "id": job_id}
                elif isinstance(spec, JobSpec) and spec.id != job_id:
                    msg = f"Job key '{job_id}' does not match its id '{spec.id}'"
                    raise ValueError(msg)
                normalized[job_id] = spec
            return normalized
        return v

    def get_job(self, job_id: str) -> JobSpec | None:
        return self.jobs.get(job_id)


# ── Runtime State Models (persisted in SQLite) ───────────────────────────────


class StepResult(BaseModel):
    """Outcome of a single step. Append-only once recorded."""

    index: int
    name: str
    kind: StepKind = StepKind.COMMAND
    exit_code: int | None = None
    success: bool = False
    continued: bool = False  # Failed but the job carried on (continue_on_failure)
    attempts: int = 1
    output_ref: str | None = None  # Path of the captured log file
    output_tail: str = ""
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class JobExecution(BaseModel):
    """Runtime state of one job within a run."""

    run_id: str
    job_id: str
    status: JobStatus = JobStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    steps: list[StepResult] = []
    error_message: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def failed_step(self) -> StepResult | None:
        """The step that failed the job, if any."""
        for step in self.steps:
            if not step.success and not step.continued:
                return step
        return None


class Run(BaseModel):
    """One execution of a workflow for one triggering event."""

    run_id: str
    workflow_name: str
    definition_snapshot: str = "{}"  # JSON-serialized WorkflowDefinition

    # Trigger metadata
    event_kind: str = "manual"
    ref: str = ""
    actor: str = ""
    repository: str = ""
    commit: str | None = None
    delivery_id: str | None = None

    status: RunStatus = RunStatus.PENDING
    jobs: dict[str, JobExecution] = {}

    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    error_message: str | None = None
    error_job_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def job(self, job_id: str) -> JobExecution:
        return self.jobs[job_id]

    def definition(self) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate_json(self.definition_snapshot)


class ApprovalRequest(BaseModel):
    """A pending or resolved human decision for an approval-gate job."""

    run_id: str
    job_id: str
    decision: ApprovalDecision = ApprovalDecision.PENDING
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    comment: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.decision != ApprovalDecision.PENDING


# ── Helpers ──────────────────────────────────────────────────────────────────


def parse_action_ref(ref: str) -> tuple[StepKind, str]:
    """Split ``kind[@version]`` into a StepKind and version.

    Raises ValueError on unknown actions or unsupported versions.
    """
    name, _, version = ref.strip().partition("@")
    version = version or DEFAULT_ACTION_VERSION
    try:
        kind = StepKind(name)
    except ValueError:
        kind = None
    if kind is None or kind not in ACTION_VERSIONS:
        known = sorted(k.value for k in ACTION_VERSIONS)
        msg = f"Unknown action '{name}'. Available: {known}"
        raise ValueError(msg)
    if version not in ACTION_VERSIONS[kind]:
        msg = f"Action '{name}' has no version '{version}'"
        raise ValueError(msg)
    return kind, version


def parse_duration_seconds(duration: str) -> int:
    """Parse a duration string like '30s', '5m', '2h', '1d' to seconds.

    Raises ValueError on invalid format.
    """
    match = re.match(r"^(\d+)\s*(s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><s|m|h|d>"
        raise ValueError(msg)
    value = int(match.group(1))
    unit = match.group(2)
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]


def _stringify_mapping(v: Any) -> Any:
    if isinstance(v, dict):
        return {str(k): _stringify_value(val) for k, val in v.items()}
    return v if v is not None else {}


def _stringify_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)

"""Pipeline orchestration — workflow graphs, jobs, steps and approvals.

Key exports:
    PipelineEngine — Facade that turns events into runs and drives them
    JobScheduler — Dependency-aware job release per run
    StepExecutor — Sequential step execution in per-job workspaces
    ApprovalGate — Human approval requests
    NotificationSink — Best-effort status fan-out
    RunStateStore — SQLite persistence
    TriggerEvaluator — Event → run matching
    validate, WorkflowGraph — Load-time DAG validation
"""

from gantry.pipeline.approvals import ApprovalGate
from gantry.pipeline.engine import PipelineEngine
from gantry.pipeline.errors import (
    ApprovalConflict,
    ApprovalForbidden,
    GantryError,
    InfrastructureError,
    NotificationDeliveryError,
    StepFailure,
    ValidationError,
)
from gantry.pipeline.executor import StepExecutor
from gantry.pipeline.graph import WorkflowGraph, validate
from gantry.pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalSpec,
    DependencyPolicy,
    JobExecution,
    JobSpec,
    JobStatus,
    PushTrigger,
    Run,
    RunStatus,
    StepKind,
    StepResult,
    StepSpec,
    TriggerDefinition,
    WorkflowDefinition,
)
from gantry.pipeline.notifications import (
    LogChannel,
    Notification,
    NotificationChannel,
    NotificationSink,
    WebhookChannel,
)
from gantry.pipeline.scheduler import JobScheduler
from gantry.pipeline.secrets import EnvSecretsStore, SecretsStore, StaticSecretsStore
from gantry.pipeline.store import RunStateStore
from gantry.pipeline.triggers import TriggerEvaluator

__all__ = [
    # Engine
    "PipelineEngine",
    "JobScheduler",
    "StepExecutor",
    "ApprovalGate",
    "TriggerEvaluator",
    # Graph
    "WorkflowGraph",
    "validate",
    # Store
    "RunStateStore",
    # Notifications
    "Notification",
    "NotificationChannel",
    "NotificationSink",
    "WebhookChannel",
    "LogChannel",
    # Secrets
    "SecretsStore",
    "EnvSecretsStore",
    "StaticSecretsStore",
    # Definition models
    "WorkflowDefinition",
    "TriggerDefinition",
    "PushTrigger",
    "JobSpec",
    "StepSpec",
    "ApprovalSpec",
    # Runtime state models
    "Run",
    "RunStatus",
    "JobExecution",
    "JobStatus",
    "StepResult",
    "ApprovalRequest",
    "ApprovalDecision",
    # Enums
    "StepKind",
    "DependencyPolicy",
    # Errors
    "GantryError",
    "ValidationError",
    "StepFailure",
    "InfrastructureError",
    "ApprovalConflict",
    "ApprovalForbidden",
    "NotificationDeliveryError",
]

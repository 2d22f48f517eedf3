"""Core event models for Gantry."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


# ── Trigger Events ───────────────────────────────────────────────────────────


class EventKind(str, enum.Enum):
    """Kinds of events that can start a pipeline run."""

    PUSH = "push"
    MANUAL = "manual"
    SCHEDULE = "schedule"


class TriggerEvent(BaseModel):
    """A normalized event handed to the trigger evaluator."""

    kind: EventKind
    ref: str = Field(default="", description="Git ref, e.g. 'refs/heads/main'")
    actor: str = Field(default="", description="Who caused the event")
    repository: str = Field(default="", description="owner/repo of the source repository")
    commit: str | None = Field(default=None, description="Head commit SHA")
    delivery_id: str | None = Field(default=None, description="Source delivery UUID")
    workflow: str | None = Field(
        default=None, description="Target workflow name (manual dispatch only)"
    )
    schedule: str | None = Field(default=None, description="Schedule label that fired")
    inputs: dict[str, str] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def branch(self) -> str | None:
        """Branch name for branch refs, None for tags."""
        if self.ref.startswith("refs/tags/"):
            return None
        return self.ref.removeprefix("refs/heads/")

    @property
    def tag(self) -> str | None:
        if self.ref.startswith("refs/tags/"):
            return self.ref.removeprefix("refs/tags/")
        return None


# ── Source Control Webhooks ──────────────────────────────────────────────────


# Map source-host event names to trigger kinds
SOURCE_EVENT_KINDS: dict[str, EventKind] = {
    "push": EventKind.PUSH,
    "workflow_dispatch": EventKind.MANUAL,
    "schedule": EventKind.SCHEDULE,
}


class SourceEvent(BaseModel):
    """Raw webhook delivery from the source control host."""

    delivery_id: str = Field(description="X-GitHub-Delivery UUID")
    event_type: str = Field(description="X-GitHub-Event header value")
    payload: dict = Field(default_factory=dict, description="Full webhook payload")

    @property
    def sender(self) -> str | None:
        sender = self.payload.get("sender")
        if isinstance(sender, dict):
            return sender.get("login")
        return None

    def to_trigger_event(self) -> TriggerEvent | None:
        """Convert to a TriggerEvent, or None for event types we don't handle."""
        kind = SOURCE_EVENT_KINDS.get(self.event_type)
        if kind is None:
            return None

        payload = self.payload
        repo = payload.get("repository") or {}
        ref = payload.get("ref") or ""
        if kind == EventKind.MANUAL and ref and not ref.startswith("refs/"):
            ref = f"refs/heads/{ref}"

        return TriggerEvent(
            kind=kind,
            ref=ref,
            actor=self.sender or (payload.get("pusher") or {}).get("name", ""),
            repository=repo.get("full_name", ""),
            commit=payload.get("after") or (payload.get("head_commit") or {}).get("id"),
            delivery_id=self.delivery_id,
            workflow=payload.get("workflow"),
            schedule=payload.get("schedule"),
            inputs={k: str(v) for k, v in (payload.get("inputs") or {}).items()},
        )

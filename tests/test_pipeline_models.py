"""Tests for pipeline Pydantic models — definitions, triggers, runtime state."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from gantry.models import EventKind, SourceEvent, TriggerEvent
from gantry.pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
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
    parse_action_ref,
    parse_duration_seconds,
)

# ── Helpers ──────────────────────────────────────────────────────────────────


def _push(ref: str) -> TriggerEvent:
    return TriggerEvent(kind=EventKind.PUSH, ref=ref)


def _job(id: str = "build", **overrides) -> dict:
    return {"id": id, "steps": [{"run": "make"}], **overrides}


# ── Enums ────────────────────────────────────────────────────────────────────


class TestEnums:
    def test_terminal_job_statuses(self):
        assert JobStatus.SUCCEEDED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert JobStatus.SKIPPED.is_terminal
        assert JobStatus.CANCELLED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.READY.is_terminal
        assert not JobStatus.RUNNING.is_terminal
        assert not JobStatus.WAITING_APPROVAL.is_terminal

    def test_terminal_run_statuses(self):
        assert RunStatus.SUCCEEDED.is_terminal
        assert RunStatus.CANCELLED.is_terminal
        assert not RunStatus.RUNNING.is_terminal

    def test_step_kind_values(self):
        assert StepKind.BUILD_IMAGE == "build-image"
        assert StepKind.COMMAND == "command"


# ── Durations & action refs ──────────────────────────────────────────────────


class TestParseDuration:
    def test_units(self):
        assert parse_duration_seconds("30s") == 30
        assert parse_duration_seconds("5m") == 300
        assert parse_duration_seconds("2h") == 7200
        assert parse_duration_seconds("1d") == 86400

    def test_whitespace_stripped(self):
        assert parse_duration_seconds(" 10m ") == 600

    def test_invalid_raises(self):
        for bad in ("10", "", "5w", "-5m"):
            with pytest.raises(ValueError):
                parse_duration_seconds(bad)


class TestParseActionRef:
    def test_default_version(self):
        assert parse_action_ref("build-image") == (StepKind.BUILD_IMAGE, "v1")

    def test_explicit_version(self):
        assert parse_action_ref("notify@v1") == (StepKind.NOTIFY, "v1")

    def test_unknown_action(self):
        with pytest.raises(ValueError, match="Unknown action"):
            parse_action_ref("deploy-k8s@v1")

    def test_command_is_not_a_named_action(self):
        with pytest.raises(ValueError, match="Unknown action"):
            parse_action_ref("command")

    def test_unknown_version(self):
        with pytest.raises(ValueError, match="no version 'v9'"):
            parse_action_ref("push-image@v9")


# ── Triggers ─────────────────────────────────────────────────────────────────


class TestPushTrigger:
    def test_any_branch_when_unfiltered(self):
        assert PushTrigger().matches("refs/heads/feature/x")

    def test_branch_globs(self):
        trigger = PushTrigger(branches=["main", "release/*"])
        assert trigger.matches("refs/heads/main")
        assert trigger.matches("refs/heads/release/1.2")
        assert not trigger.matches("refs/heads/dev")

    def test_branches_ignore_wins(self):
        trigger = PushTrigger(branches=["*"], branches_ignore=["wip-*"])
        assert trigger.matches("refs/heads/main")
        assert not trigger.matches("refs/heads/wip-thing")

    def test_tags(self):
        trigger = PushTrigger(tags=["v*"])
        assert trigger.matches("refs/tags/v1.0.0")
        assert not trigger.matches("refs/tags/nightly")
        # A tags-only filter ignores branch pushes
        assert not trigger.matches("refs/heads/main")

    def test_tag_push_without_tag_filter(self):
        assert not PushTrigger(branches=["main"]).matches("refs/tags/v1")


class TestTriggerDefinition:
    def test_string_shorthand(self):
        trigger = TriggerDefinition.model_validate("push")
        assert trigger.push is not None
        assert not trigger.manual

    def test_list_shorthand(self):
        trigger = TriggerDefinition.model_validate(["push", "manual"])
        assert trigger.push is not None
        assert trigger.manual

    def test_workflow_dispatch_alias(self):
        trigger = TriggerDefinition.model_validate({"workflow_dispatch": None})
        assert trigger.manual

    def test_push_with_null_body(self):
        trigger = TriggerDefinition.model_validate({"push": None})
        assert trigger.matches(_push("refs/heads/anything"))

    def test_push_match(self):
        trigger = TriggerDefinition.model_validate({"push": {"branches": ["main"]}})
        assert trigger.matches(_push("refs/heads/main"))
        assert not trigger.matches(_push("refs/heads/dev"))

    def test_manual_match(self):
        trigger = TriggerDefinition(manual=True)
        assert trigger.matches(TriggerEvent(kind=EventKind.MANUAL))
        assert not TriggerDefinition().matches(TriggerEvent(kind=EventKind.MANUAL))

    def test_schedule_match(self):
        trigger = TriggerDefinition(schedule=["nightly"])
        assert trigger.matches(TriggerEvent(kind=EventKind.SCHEDULE, schedule="nightly"))
        assert not trigger.matches(TriggerEvent(kind=EventKind.SCHEDULE, schedule="weekly"))
        assert trigger.matches(TriggerEvent(kind=EventKind.SCHEDULE))

    def test_no_push_trigger_never_matches_push(self):
        assert not TriggerDefinition(manual=True).matches(_push("refs/heads/main"))


# ── Steps & jobs ─────────────────────────────────────────────────────────────


class TestStepSpec:
    def test_command_step(self):
        step = StepSpec(run="make test")
        assert step.kind == StepKind.COMMAND
        assert step.version is None
        assert step.display_name == "make test"

    def test_action_step_with_inputs(self):
        step = StepSpec.model_validate(
            {"uses": "build-image@v1", "with": {"image": "app", "tag": "1.0"}}
        )
        assert step.kind == StepKind.BUILD_IMAGE
        assert step.version == "v1"
        assert step.with_ == {"image": "app", "tag": "1.0"}
        assert step.display_name == "build-image@v1"

    def test_both_forms_rejected(self):
        with pytest.raises(ValidationError, match="exactly one of 'run' or 'uses'"):
            StepSpec(run="make", uses="notify@v1")

    def test_neither_form_rejected(self):
        with pytest.raises(ValidationError, match="exactly one of 'run' or 'uses'"):
            StepSpec(name="empty")

    def test_unknown_action_rejected(self):
        with pytest.raises(ValidationError, match="Unknown action"):
            StepSpec(uses="teleport@v1")

    def test_env_values_stringified(self):
        step = StepSpec(run="env", env={"DEBUG": True, "RETRIES": 3})
        assert step.env == {"DEBUG": "true", "RETRIES": "3"}

    def test_display_name_uses_first_line(self):
        step = StepSpec(run="set -e\nmake all\n")
        assert step.display_name == "set -e"


class TestJobSpec:
    def test_needs_string_coerced(self):
        job = JobSpec.model_validate(_job("deploy", needs="build"))
        assert job.needs == ["build"]

    def test_duplicate_needs_collapsed(self):
        job = JobSpec.model_validate(_job("deploy", needs=["build", "lint", "build"]))
        assert job.needs == ["build", "lint"]

    def test_runs_on_alias(self):
        job = JobSpec.model_validate(_job(**{"runs-on": "docker"}))
        assert job.runs_on == "docker"

    def test_invalid_id(self):
        with pytest.raises(ValidationError, match="must match pattern"):
            JobSpec.model_validate(_job("1-bad"))

    def test_job_without_steps_rejected(self):
        with pytest.raises(ValidationError, match="require at least one step"):
            JobSpec(id="empty")

    def test_approval_job_may_have_no_steps(self):
        job = JobSpec.model_validate({"id": "approve", "approval": True})
        assert job.is_approval
        assert job.steps == []

    def test_approval_allowlist_and_expiry(self):
        job = JobSpec.model_validate(
            {"id": "approve", "approval": {"approvers": ["alice"], "expires_in": "2h"}}
        )
        assert job.approval.approvers == ["alice"]
        assert job.approval.expires_in == "2h"

    def test_bad_approval_expiry(self):
        with pytest.raises(ValidationError, match="Invalid duration"):
            JobSpec.model_validate({"id": "approve", "approval": {"expires_in": "soon"}})

    def test_timeout(self):
        assert JobSpec.model_validate(_job(timeout="5m")).timeout_seconds() == 300
        assert JobSpec.model_validate(_job()).timeout_seconds() is None
        with pytest.raises(ValidationError):
            JobSpec.model_validate(_job(timeout="forever"))

    def test_default_policy(self):
        assert JobSpec.model_validate(_job()).when == DependencyPolicy.SUCCESS
        assert JobSpec.model_validate(_job(when="always")).when == DependencyPolicy.ALWAYS


class TestWorkflowDefinition:
    def test_jobs_mapping_injects_ids(self):
        wf = WorkflowDefinition.model_validate(
            {"name": "ci", "jobs": {"build": {"steps": [{"run": "make"}]}}}
        )
        assert wf.jobs["build"].id == "build"

    def test_jobs_list(self):
        wf = WorkflowDefinition.model_validate(
            {"name": "ci", "jobs": [_job("build"), _job("test", needs="build")]}
        )
        assert list(wf.jobs) == ["build", "test"]

    def test_jobs_list_duplicate_ids(self):
        with pytest.raises(ValidationError, match="Duplicate job IDs"):
            WorkflowDefinition.model_validate({"name": "ci", "jobs": [_job("a"), _job("a")]})

    def test_mismatched_key_and_id(self):
        with pytest.raises(ValidationError, match="does not match its id"):
            WorkflowDefinition.model_validate({"name": "ci", "jobs": {"a": _job("b")}})

    def test_empty_jobs_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowDefinition.model_validate({"name": "ci", "jobs": {}})

    def test_null_trigger_defaults(self):
        wf = WorkflowDefinition.model_validate({"name": "ci", "trigger": None, "jobs": [_job()]})
        assert wf.trigger.push is None
        assert not wf.trigger.manual

    def test_snapshot_round_trip_keeps_trigger(self):
        wf = WorkflowDefinition.model_validate(
            {"name": "ci", "trigger": {"manual": True}, "jobs": [_job()]}
        )
        restored = WorkflowDefinition.model_validate_json(
            wf.model_dump_json(by_alias=True, exclude_none=True)
        )
        assert restored.trigger.push is None
        assert restored.trigger.manual
        assert restored.jobs["build"].steps[0].run == "make"


# ── Runtime state ────────────────────────────────────────────────────────────


class TestRuntimeModels:
    def test_step_duration(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        step = StepResult(index=0, name="x", started_at=start, completed_at=start + timedelta(seconds=3))
        assert step.duration_seconds == 3.0

    def test_failed_step_ignores_continued(self):
        execution = JobExecution(
            run_id="r",
            job_id="j",
            steps=[
                StepResult(index=0, name="lint", success=False, continued=True),
                StepResult(index=1, name="test", success=False),
            ],
        )
        assert execution.failed_step().name == "test"

    def test_run_definition_snapshot(self):
        wf = WorkflowDefinition.model_validate({"name": "ci", "jobs": [_job()]})
        run = Run(run_id="r", workflow_name="ci", definition_snapshot=wf.model_dump_json())
        assert run.definition().name == "ci"
        assert not run.is_terminal

    def test_approval_request_resolution(self):
        req = ApprovalRequest(run_id="r", job_id="approve")
        assert not req.is_resolved
        req.decision = ApprovalDecision.APPROVED
        assert req.is_resolved


# ── Source events ────────────────────────────────────────────────────────────


class TestSourceEvent:
    def test_push_conversion(self):
        event = SourceEvent(
            delivery_id="d1",
            event_type="push",
            payload={
                "ref": "refs/heads/main",
                "after": "abc123",
                "repository": {"full_name": "acme/app"},
                "sender": {"login": "alice"},
            },
        )
        trigger = event.to_trigger_event()
        assert trigger.kind == EventKind.PUSH
        assert trigger.ref == "refs/heads/main"
        assert trigger.branch == "main"
        assert trigger.commit == "abc123"
        assert trigger.actor == "alice"
        assert trigger.repository == "acme/app"
        assert trigger.delivery_id == "d1"

    def test_dispatch_ref_normalized(self):
        event = SourceEvent(
            delivery_id="d2",
            event_type="workflow_dispatch",
            payload={"ref": "main", "workflow": "deploy", "inputs": {"dry_run": True}},
        )
        trigger = event.to_trigger_event()
        assert trigger.kind == EventKind.MANUAL
        assert trigger.ref == "refs/heads/main"
        assert trigger.workflow == "deploy"
        assert trigger.inputs == {"dry_run": "True"}

    def test_tag_ref(self):
        trigger = TriggerEvent(kind=EventKind.PUSH, ref="refs/tags/v1.0")
        assert trigger.tag == "v1.0"
        assert trigger.branch is None

    def test_unhandled_event_type(self):
        assert SourceEvent(delivery_id="d3", event_type="issues").to_trigger_event() is None

"""Tests for TriggerEvaluator — event matching and run creation."""

from __future__ import annotations

import pytest

from gantry.models import EventKind, TriggerEvent
from gantry.pipeline.graph import validate
from gantry.pipeline.models import JobStatus, RunStatus
from gantry.pipeline.triggers import TriggerEvaluator


def make_graph(name: str, trigger, jobs: dict | None = None):
    return validate(
        {
            "name": name,
            "trigger": trigger,
            "jobs": jobs
            or {
                "test": {"needs": "build", "steps": [{"run": "make test"}]},
                "build": {"steps": [{"run": "make"}]},
            },
        }
    )


def push(ref: str = "refs/heads/main", **kwargs) -> TriggerEvent:
    return TriggerEvent(
        kind=EventKind.PUSH,
        ref=ref,
        actor=kwargs.pop("actor", "alice"),
        repository="acme/app",
        commit="c0ffee",
        **kwargs,
    )


@pytest.fixture
def evaluator(store):
    ev = TriggerEvaluator(store)
    ev.register(make_graph("ci", {"push": {"branches": ["main", "release/*"]}}))
    ev.register(make_graph("nightly", {"schedule": ["nightly"]}))
    ev.register(make_graph("deploy", {"push": {"branches": ["main"]}, "manual": True}))
    return ev


class TestMatching:
    def test_push_matches_branch_filters(self, evaluator):
        names = [g.name for g in evaluator.matching(push())]
        assert names == ["ci", "deploy"]

        names = [g.name for g in evaluator.matching(push("refs/heads/release/1.2"))]
        assert names == ["ci"]

        assert evaluator.matching(push("refs/heads/feature/x")) == []

    def test_schedule(self, evaluator):
        event = TriggerEvent(kind=EventKind.SCHEDULE, schedule="nightly")
        assert [g.name for g in evaluator.matching(event)] == ["nightly"]

    def test_manual_requires_opt_in(self, evaluator):
        event = TriggerEvent(kind=EventKind.MANUAL, ref="refs/heads/main")
        assert [g.name for g in evaluator.matching(event)] == ["deploy"]

    def test_manual_targets_named_workflow(self, evaluator):
        evaluator.register(make_graph("hotfix", {"manual": True}))
        event = TriggerEvent(kind=EventKind.MANUAL, workflow="hotfix")
        assert [g.name for g in evaluator.matching(event)] == ["hotfix"]

    def test_register_replaces_and_unregister(self, evaluator):
        evaluator.register(make_graph("ci", {"push": {"branches": ["develop"]}}))
        assert [g.name for g in evaluator.matching(push())] == ["deploy"]

        evaluator.unregister("deploy")
        evaluator.unregister("missing")
        assert evaluator.matching(push()) == []
        assert evaluator.get("deploy") is None
        assert set(evaluator.workflows) == {"ci", "nightly"}


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_one_run_per_matching_workflow(self, evaluator, store):
        runs = await evaluator.evaluate(push(delivery_id="d-1"))

        assert [r.workflow_name for r in runs] == ["ci", "deploy"]
        assert len({r.run_id for r in runs}) == 2
        for run in runs:
            assert run.run_id.startswith("run-")
            assert run.status == RunStatus.PENDING
            assert run.event_kind == "push"
            assert run.ref == "refs/heads/main"
            assert run.actor == "alice"
            assert run.commit == "c0ffee"
            assert run.delivery_id == "d-1"
            assert all(j.status == JobStatus.PENDING for j in run.jobs.values())

    @pytest.mark.asyncio
    async def test_jobs_in_topological_order(self, evaluator):
        runs = await evaluator.evaluate(push())
        assert list(runs[0].jobs) == ["build", "test"]

    @pytest.mark.asyncio
    async def test_runs_persisted_before_return(self, evaluator, store):
        runs = await evaluator.evaluate(push())
        for run in runs:
            stored = await store.get(run.run_id)
            assert stored is not None
            assert set(stored.jobs) == {"build", "test"}

    @pytest.mark.asyncio
    async def test_no_match_creates_nothing(self, evaluator, store):
        assert await evaluator.evaluate(push("refs/heads/wip")) == []
        assert await store.list_runs() == []

    @pytest.mark.asyncio
    async def test_snapshot_pins_definition(self, evaluator, store):
        run = (await evaluator.evaluate(push()))[0]

        # Re-registering a changed definition does not touch existing runs
        evaluator.register(
            make_graph("ci", {"push": {}}, jobs={"only": {"steps": [{"run": "true"}]}})
        )
        stored = await store.get(run.run_id)
        definition = stored.definition()
        assert set(definition.jobs) == {"build", "test"}
        assert definition.jobs["test"].needs == ["build"]
        assert definition.trigger.push.branches == ["main", "release/*"]
        assert definition.trigger.manual is False

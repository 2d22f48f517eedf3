"""Tests for the event router."""

import asyncio
import os

import pytest
import pytest_asyncio

from gantry.event_router import EventRouter
from gantry.models import SourceEvent
from gantry.pipeline.engine import PipelineEngine
from gantry.pipeline.executor import StepExecutor
from gantry.pipeline.models import RunStatus


def push_event(delivery_id: str = "d-1", ref: str = "refs/heads/main", sender: str = "alice"):
    return SourceEvent(
        delivery_id=delivery_id,
        event_type="push",
        payload={
            "ref": ref,
            "after": "c0ffee",
            "repository": {"full_name": "acme/app"},
            "sender": {"login": sender},
        },
    )


@pytest_asyncio.fixture
async def engine(store, tmp_path):
    executor = StepExecutor(
        store,
        workspace_root=tmp_path / "workspaces",
        base_env={"PATH": os.environ.get("PATH", "/usr/bin:/bin")},
    )
    eng = PipelineEngine(store, executor, approval_sweep_interval=0)
    eng.add_workflow(
        {
            "name": "ci",
            "trigger": {"push": {"branches": ["main"]}},
            "jobs": {"test": {"steps": [{"run": "true"}]}},
        }
    )
    yield eng
    await eng.stop()


@pytest_asyncio.fixture
async def router(store, engine):
    queue = asyncio.Queue()
    r = EventRouter(queue, store, engine, ignored_senders={"gantry-bot"})
    yield r, queue
    await r.stop()


class TestRouteEvent:
    @pytest.mark.asyncio
    async def test_push_starts_run(self, router, engine):
        r, _ = router
        runs = await r.route_event(push_event())

        assert [run.workflow_name for run in runs] == ["ci"]
        run = runs[0]
        assert run.delivery_id == "d-1"
        assert run.actor == "alice"
        assert run.repository == "acme/app"
        assert run.commit == "c0ffee"
        result = await engine.wait_for_run(run.run_id, timeout=10)
        assert result.status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_duplicate_delivery_ignored(self, router, engine):
        r, _ = router
        first = await r.route_event(push_event("d-dup"))
        second = await r.route_event(push_event("d-dup"))

        assert len(first) == 1
        assert second == []
        await engine.wait_for_run(first[0].run_id, timeout=10)
        assert len(await engine.list_runs()) == 1

    @pytest.mark.asyncio
    async def test_ignored_sender(self, router, store):
        r, _ = router
        assert await r.route_event(push_event(sender="gantry-bot")) == []
        assert await store.has_seen_event("d-1") is False

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, router, store):
        r, _ = router
        event = SourceEvent(delivery_id="d-issue", event_type="issues", payload={})
        assert await r.route_event(event) == []
        assert await store.has_seen_event("d-issue") is True

    @pytest.mark.asyncio
    async def test_non_matching_branch(self, router, engine):
        r, _ = router
        assert await r.route_event(push_event(ref="refs/heads/feature")) == []
        assert await engine.list_runs() == []


class TestConsumerLoop:
    @pytest.mark.asyncio
    async def test_consumes_queue(self, router, engine):
        r, queue = router
        await r.start()
        await queue.put(push_event("d-loop"))

        for _ in range(100):
            runs = await engine.list_runs()
            if runs:
                break
            await asyncio.sleep(0.05)

        assert len(runs) == 1
        assert runs[0].delivery_id == "d-loop"
        await engine.wait_for_run(runs[0].run_id, timeout=10)

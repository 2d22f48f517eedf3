"""Tests for workflow graph validation — needs resolution, cycles, ordering."""

from __future__ import annotations

import pytest

from gantry.pipeline.errors import ValidationError
from gantry.pipeline.graph import validate
from gantry.pipeline.models import WorkflowDefinition


def _wf(jobs: dict, name: str = "ci") -> dict:
    return {
        "name": name,
        "jobs": {
            job_id: {"steps": [{"run": f"echo {job_id}"}], **spec}
            for job_id, spec in jobs.items()
        },
    }


DEPLOY = _wf(
    {
        "build": {},
        "approve": {"needs": "build"},
        "deploy-dev": {"needs": "approve"},
        "deploy-prod": {"needs": "deploy-dev"},
    },
    name="deploy",
)


class TestValidate:
    def test_linear_order(self):
        graph = validate(DEPLOY)
        assert graph.name == "deploy"
        assert graph.topological_order() == ["build", "approve", "deploy-dev", "deploy-prod"]
        assert graph.roots() == ["build"]

    def test_accepts_definition_model(self):
        graph = validate(WorkflowDefinition.model_validate(DEPLOY))
        assert graph.job_ids == ("build", "approve", "deploy-dev", "deploy-prod")

    def test_name_fallback(self):
        raw = _wf({"build": {}})
        del raw["name"]
        graph = validate(raw, name="from-file")
        assert graph.name == "from-file"

    def test_diamond(self):
        graph = validate(
            _wf(
                {
                    "build": {},
                    "unit": {"needs": "build"},
                    "lint": {"needs": "build"},
                    "publish": {"needs": ["unit", "lint"]},
                }
            )
        )
        order = graph.topological_order()
        assert order[0] == "build"
        assert order[-1] == "publish"
        assert graph.levels() == [["build"], ["unit", "lint"], ["publish"]]
        assert set(graph.dependents("build")) == {"unit", "lint"}
        assert graph.needs("publish") == ["unit", "lint"]
        assert graph.descendants("build") == {"unit", "lint", "publish"}

    def test_ties_keep_declaration_order(self):
        graph = validate(_wf({"c": {}, "a": {}, "b": {}}))
        assert graph.topological_order() == ["c", "a", "b"]

    def test_every_dependency_precedes_dependent(self):
        graph = validate(
            _wf(
                {
                    "z": {"needs": ["y", "x"]},
                    "y": {"needs": "x"},
                    "x": {},
                    "w": {"needs": "z"},
                }
            )
        )
        order = graph.topological_order()
        for job_id in graph.job_ids:
            for need in graph.needs(job_id):
                assert order.index(need) < order.index(job_id)


class TestValidationErrors:
    def test_unknown_need(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(_wf({"build": {}, "deploy": {"needs": "biuld"}}))
        err = exc_info.value
        assert err.job_id == "deploy"
        assert err.edge == ("biuld", "deploy")
        assert "unknown job 'biuld'" in str(err)
        assert str(err).startswith("Workflow 'ci': ")

    def test_self_need(self):
        with pytest.raises(ValidationError, match="needs itself") as exc_info:
            validate(_wf({"loop": {"needs": "loop"}}))
        assert exc_info.value.edge == ("loop", "loop")

    def test_two_job_cycle(self):
        with pytest.raises(ValidationError, match="Dependency cycle detected") as exc_info:
            validate(_wf({"a": {"needs": "b"}, "b": {"needs": "a"}}))
        err = exc_info.value
        assert err.job_id in {"a", "b"}
        assert set(err.edge) == {"a", "b"}

    def test_cycle_path_is_concrete(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(
                _wf(
                    {
                        "root": {},
                        "a": {"needs": ["root", "c"]},
                        "b": {"needs": "a"},
                        "c": {"needs": "b"},
                        "tail": {"needs": "c"},
                    }
                )
            )
        message = str(exc_info.value)
        path = message.split("Dependency cycle detected: ")[1].split(" -> ")
        assert path[0] == path[-1]
        assert set(path) == {"a", "b", "c"}
        # Each hop follows a real needs edge in execution direction
        edges = {("c", "a"), ("a", "b"), ("b", "c")}
        assert all((path[i], path[i + 1]) in edges for i in range(len(path) - 1))

    def test_step_with_both_forms(self):
        raw = _wf({"build": {}})
        raw["jobs"]["build"]["steps"] = [{"run": "make", "uses": "notify@v1"}]
        with pytest.raises(ValidationError, match="exactly one of 'run' or 'uses'") as exc_info:
            validate(raw)
        assert exc_info.value.job_id == "build"

    def test_unknown_action_names_job(self):
        raw = _wf({"build": {}})
        raw["jobs"]["build"]["steps"] = [{"uses": "warp-drive@v2"}]
        with pytest.raises(ValidationError, match="Unknown action") as exc_info:
            validate(raw)
        assert exc_info.value.job_id == "build"

    def test_duplicate_job_ids(self):
        raw = {
            "name": "ci",
            "jobs": [
                {"id": "build", "steps": [{"run": "a"}]},
                {"id": "build", "steps": [{"run": "b"}]},
            ],
        }
        with pytest.raises(ValidationError, match="Duplicate job IDs"):
            validate(raw)

    def test_missing_name(self):
        with pytest.raises(ValidationError):
            validate({"jobs": {"build": {"steps": [{"run": "x"}]}}})

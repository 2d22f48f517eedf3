"""Tests for the gantry command line."""

from __future__ import annotations

import sys

import pytest

from gantry.__main__ import main
from gantry.pipeline.engine import PipelineEngine

FAILING_WORKFLOW = """\
name: broken
trigger: manual
jobs:
  build:
    steps:
      - name: Compile
        run: echo "compiler says no"; exit 3
  deploy:
    needs: build
    steps:
      - run: echo never
"""


def run_cli(monkeypatch, *args) -> int:
    monkeypatch.setattr(sys, "argv", ["gantry", *args])
    with pytest.raises(SystemExit) as exc_info:
        main()
    return exc_info.value.code


@pytest.fixture
def project(tmp_path, monkeypatch, capsys):
    """A repository scaffolded with ``gantry init``."""
    monkeypatch.setattr(sys, "argv", ["gantry", "init", "--repo-root", str(tmp_path)])
    main()
    return tmp_path


class TestInit:
    def test_scaffolds_project(self, project, capsys):
        assert (project / ".gantry" / "config.yaml").exists()
        assert (project / ".gantry" / "workflows" / "deploy.yml").exists()
        assert "Initialized Gantry project" in capsys.readouterr().out

    def test_refuses_existing_directory(self, project, monkeypatch, capsys):
        assert run_cli(monkeypatch, "init", "--repo-root", str(project)) == 1
        assert "already exists" in capsys.readouterr().err

    def test_no_command_prints_help(self, monkeypatch):
        assert run_cli(monkeypatch) == 1


class TestValidate:
    def test_default_workflow_is_valid(self, project, monkeypatch, capsys):
        assert run_cli(monkeypatch, "validate", "--repo-root", str(project)) == 0

        out = capsys.readouterr().out
        assert "deploy: 4 job(s)" in out
        assert "stage 1: build" in out
        assert "stage 4: deploy-prod" in out

    def test_invalid_workflow(self, project, monkeypatch, capsys):
        (project / ".gantry" / "workflows" / "cyclic.yml").write_text(
            "jobs:\n"
            "  a:\n    needs: b\n    steps:\n      - run: x\n"
            "  b:\n    needs: a\n    steps:\n      - run: x\n"
        )
        assert run_cli(monkeypatch, "validate", "--repo-root", str(project)) == 1
        assert "Dependency cycle detected" in capsys.readouterr().err

    def test_no_workflows(self, tmp_path, monkeypatch, capsys):
        assert run_cli(monkeypatch, "validate", "--repo-root", str(tmp_path)) == 0
        assert "No workflows found" in capsys.readouterr().out


class TestRun:
    def test_auto_approve_runs_to_completion(self, project, monkeypatch, capsys):
        code = run_cli(
            monkeypatch, "run", "deploy", "--repo-root", str(project),
            "--auto-approve", "--actor", "alice", "--commit", "abcdef1234",
        )

        out = capsys.readouterr().out
        assert code == 0
        assert "Approved 'approve' as alice" in out
        assert ": succeeded" in out
        assert "deploy-prod" in out

    def test_pending_approval_without_flag(self, project, monkeypatch, capsys):
        code = run_cli(monkeypatch, "run", "deploy", "--repo-root", str(project))

        assert code == 2
        assert "waiting for approval of: approve" in capsys.readouterr().err

    def test_failed_run_reports_step_output(self, project, monkeypatch, capsys):
        (project / ".gantry" / "workflows" / "broken.yml").write_text(FAILING_WORKFLOW)

        code = run_cli(monkeypatch, "run", "broken", "--repo-root", str(project))

        out = capsys.readouterr().out
        assert code == 1
        assert ": failed" in out
        assert "Step 'Compile' failed: Command exited with code 3" in out
        assert "| compiler says no" in out
        assert "skipped" in out

    def test_unknown_workflow(self, project, monkeypatch, capsys):
        assert run_cli(monkeypatch, "run", "ghost", "--repo-root", str(project)) == 1
        assert "unknown workflow 'ghost'" in capsys.readouterr().err

    def test_approval_resolved_elsewhere_first(self, project, monkeypatch, capsys):
        approve = PipelineEngine.approve

        async def approved_by_bot_first(self, run_id, job_id, **kwargs):
            await approve(self, run_id, job_id, actor="release-bot")
            return await approve(self, run_id, job_id, **kwargs)

        monkeypatch.setattr(PipelineEngine, "approve", approved_by_bot_first)

        code = run_cli(
            monkeypatch, "run", "deploy", "--repo-root", str(project),
            "--auto-approve", "--actor", "alice",
        )

        captured = capsys.readouterr()
        assert code == 0
        assert "'approve' was already approved by release-bot" in captured.err
        assert "Approved 'approve' as alice" not in captured.out
        assert ": succeeded" in captured.out

    def test_dispatch_returning_nothing(self, project, monkeypatch, capsys):
        async def no_run(self, name, **kwargs):
            return None

        monkeypatch.setattr(PipelineEngine, "dispatch", no_run)

        assert run_cli(monkeypatch, "run", "deploy", "--repo-root", str(project)) == 1
        assert "workflow 'deploy' is not registered" in capsys.readouterr().err

    def test_run_missing_from_store(self, project, monkeypatch, capsys):
        async def vanished(self, run_id, timeout=None):
            return None

        monkeypatch.setattr(PipelineEngine, "wait_for_run", vanished)

        code = run_cli(monkeypatch, "run", "deploy", "--repo-root", str(project), "--auto-approve")

        assert code == 1
        assert "is no longer in the store" in capsys.readouterr().err

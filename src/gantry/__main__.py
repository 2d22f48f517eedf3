"""Gantry CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from gantry.config import load_config, load_workflows
from gantry.pipeline.errors import ApprovalConflict, ApprovalForbidden, ValidationError

# ── Default templates for `gantry init` ──────────────────────────────────────

_DEFAULT_CONFIG = """\
# .gantry/config.yaml: Gantry project configuration

project:
  name: "{project_name}"
  repository: "{repository}"
  default_branch: main

engine:
  max_concurrent_jobs: 4
  default_job_timeout: 1h

executor:
  workspace_root: workspaces
  keep_workspaces: true
  infra_retries: 2
  container_cli: docker

approvals:
  expiry: 24h

notifications:
  # webhook_url: https://hooks.example.com/services/...
  max_retries: 3

storage:
  data_dir: .gantry-data
"""

_DEFAULT_WORKFLOW = """\
# .gantry/workflows/deploy.yml: build, approve, then deploy to dev and prod

name: deploy
description: Build the image, wait for approval, then roll out dev and prod

trigger:
  push:
    branches: [main]
  manual: true

env:
  IMAGE: registry.example.com/{project_name}

jobs:
  build:
    steps:
      - name: Build
        run: echo "building ${{{{ run.short_sha }}}}"
      - name: Test
        run: echo "running tests"

  approve:
    needs: build
    approval:
      description: Promote this build to dev and prod?

  deploy-dev:
    needs: approve
    steps:
      - run: echo "deploying to dev"

  deploy-prod:
    needs: deploy-dev
    steps:
      - run: echo "deploying to prod"
"""


def _init_project(repo_root: Path) -> None:
    """Scaffold a .gantry/ directory with default configuration."""
    gantry_dir = repo_root / ".gantry"
    workflows_dir = gantry_dir / "workflows"

    if gantry_dir.exists():
        print(f"Error: {gantry_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = repo_root.resolve().name
    workflows_dir.mkdir(parents=True)
    (gantry_dir / "config.yaml").write_text(
        _DEFAULT_CONFIG.format(project_name=project_name, repository="")
    )
    (workflows_dir / "deploy.yml").write_text(
        _DEFAULT_WORKFLOW.format(project_name=project_name)
    )

    print(f"Initialized Gantry project at {gantry_dir}")
    print(f"  Project: {project_name}")
    print()
    print("Next steps:")
    print(f"  1. Review {gantry_dir / 'config.yaml'} and {workflows_dir / 'deploy.yml'}")
    print("  2. Run: gantry validate")
    print("  3. Run: gantry run deploy --auto-approve")


def _validate(repo_root: Path) -> int:
    """Load and validate every workflow. Returns a process exit code."""
    try:
        workflows = load_workflows(repo_root / ".gantry" / "workflows")
    except ValidationError as e:
        print(f"Invalid: {e}", file=sys.stderr)
        return 1

    if not workflows:
        print("No workflows found")
        return 0
    for name, graph in workflows.items():
        print(f"{name}: {len(graph.job_ids)} job(s)")
        for i, stage in enumerate(graph.levels(), start=1):
            print(f"  stage {i}: {', '.join(stage)}")
    return 0


async def _run_workflow(args) -> int:
    """One-shot local run of a single workflow."""
    import aiosqlite
    import httpx

    from gantry.pipeline import RunStateStore
    from gantry.server import build_engine, build_notifier

    repo_root: Path = args.repo_root
    gantry_dir = repo_root / ".gantry"
    try:
        config = load_config(gantry_dir)
        workflows = load_workflows(gantry_dir / "workflows")
    except (FileNotFoundError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.workflow not in workflows:
        print(f"Error: unknown workflow '{args.workflow}'. Known: {sorted(workflows)}", file=sys.stderr)
        return 1

    data_dir = config.data_path(repo_root)
    data_dir.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(data_dir / config.storage.db_name))
    db.row_factory = aiosqlite.Row
    store = RunStateStore(db)
    await store.initialize()

    async with httpx.AsyncClient(timeout=config.notifications.timeout) as http_client:
        notifier = build_notifier(config, http_client)
        engine = build_engine(
            config, store, repo_root=repo_root, http_client=http_client, notifier=notifier
        )
        engine.add_workflow(workflows[args.workflow])
        await engine.start()
        try:
            run = await engine.dispatch(
                args.workflow, actor=args.actor, ref=args.ref, commit=args.commit
            )
            if run is None:
                print(f"Error: workflow '{args.workflow}' is not registered", file=sys.stderr)
                return 1
            print(f"Started run {run.run_id} of '{args.workflow}'")

            while True:
                pending = await store.get_pending_approvals(run_id=run.run_id)
                if pending and not args.auto_approve:
                    jobs = ", ".join(req.job_id for req in pending)
                    print(
                        f"Run is waiting for approval of: {jobs}. Re-run with "
                        "--auto-approve, or use 'gantry serve' to decide via the API.",
                        file=sys.stderr,
                    )
                    await engine.cancel_run(run.run_id)
                    return 2
                for req in pending:
                    try:
                        await engine.approve(
                            run.run_id, req.job_id, actor=args.actor, comment="Approved from CLI"
                        )
                    except ApprovalForbidden as e:
                        print(f"Error: {e}", file=sys.stderr)
                        await engine.cancel_run(run.run_id)
                        return 2
                    except ApprovalConflict as e:
                        # Resolved elsewhere first (e.g. expiry); the run follows that decision
                        print(
                            f"'{req.job_id}' was already {e.request.decision.value} "
                            f"by {e.request.decided_by}",
                            file=sys.stderr,
                        )
                        continue
                    print(f"Approved '{req.job_id}' as {args.actor}")
                try:
                    result = await engine.wait_for_run(run.run_id, timeout=0.5)
                    break
                except asyncio.TimeoutError:
                    continue
        finally:
            await engine.stop()
            await store.close()

    if result is None:
        print(f"Error: run {run.run_id} is no longer in the store", file=sys.stderr)
        return 1
    graph = workflows[args.workflow]
    print()
    print(f"Run {result.run_id}: {result.status.value}")
    for job_id in graph.topological_order():
        execution = result.jobs[job_id]
        duration = execution.duration_seconds
        timing = f" ({duration:.1f}s)" if duration is not None else ""
        print(f"  {job_id:<24} {execution.status.value}{timing}")
        if execution.error_message:
            print(f"    {execution.error_message}")
        failed = execution.failed_step()
        if failed and failed.output_tail:
            for line in failed.output_tail.rstrip().splitlines()[-10:]:
                print(f"    | {line}")
    return 0 if result.status.value == "succeeded" else 1


def main():
    parser = argparse.ArgumentParser(
        prog="gantry",
        description="Gantry — pipeline orchestration engine",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # gantry init
    init_parser = subparsers.add_parser("init", help="Initialize a new Gantry project")
    init_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )

    # gantry validate
    validate_parser = subparsers.add_parser("validate", help="Validate workflow definitions")
    validate_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )

    # gantry run
    run_parser = subparsers.add_parser("run", help="Run one workflow locally and wait for it")
    run_parser.add_argument("workflow", help="Workflow name")
    run_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    run_parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every approval job as --actor",
    )
    run_parser.add_argument(
        "--actor",
        default=os.environ.get("USER", "cli"),
        help="Actor recorded on the run and approvals (default: $USER)",
    )
    run_parser.add_argument("--ref", default="", help="Git ref to record on the run")
    run_parser.add_argument("--commit", default=None, help="Commit SHA to record on the run")

    # gantry serve
    serve_parser = subparsers.add_parser("serve", help="Start the Gantry webhook/API server")
    serve_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "validate":
        sys.exit(_validate(args.repo_root))

    if args.command == "run":
        sys.exit(asyncio.run(_run_workflow(args)))

    # serve
    gantry_dir = args.repo_root / ".gantry"
    if not gantry_dir.exists() and not os.environ.get("GANTRY_CONFIG_DIR"):
        print(f"Error: .gantry/ directory not found at {gantry_dir}", file=sys.stderr)
        print("Run 'gantry init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    from gantry.server import create_app

    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()

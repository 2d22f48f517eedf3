"""Step executor — runs a job's steps strictly in order inside its workspace.

Each job gets its own directory under ``workspace_root/<run_id>/<job_id>``;
steps run there one at a time and each StepResult is persisted before the
next step starts. Step kinds are a closed set dispatched through a handler
table:

    command      — ``run:`` text executed by the configured shell
    build-image  — container CLI ``build`` (``with: image, tag(s), context, ...``)
    push-image   — container CLI ``push`` (optional registry login)
    notify       — HTTP POST of a message to ``with: url``
    script       — inline ``with: script`` written to a file and run by ``interpreter``

Infrastructure errors (tool missing, daemon/registry/network unreachable) are
retried with exponential backoff before being recorded as a step failure.
Cancellation kills the running step's process group.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import shutil
import signal
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from gantry.pipeline.errors import InfrastructureError, StepFailure
from gantry.pipeline.models import (
    JobExecution,
    JobSpec,
    JobStatus,
    Run,
    StepKind,
    StepResult,
    StepSpec,
)

if TYPE_CHECKING:
    from gantry.pipeline.secrets import SecretsStore
    from gantry.pipeline.store import RunStateStore

logger = logging.getLogger("gantry.pipeline.executor")

# Environment variables never passed through to step processes
_STRIPPED_ENV_PREFIXES = ("GANTRY_SECRET_",)
_STRIPPED_ENV_KEYS = frozenset({"GANTRY_WEBHOOK_SECRET", "GANTRY_API_KEY"})

# Tool output that indicates a transient infrastructure problem, not a build error
_TRANSIENT_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "connection refused",
    "connection reset by peer",
    "i/o timeout",
    "tls handshake timeout",
    "no such host",
    "temporary failure in name resolution",
    "503 service unavailable",
)

_EXPRESSION = re.compile(r"\$\{\{\s*([A-Za-z_][\w.-]*)\s*\}\}")

_MASK = "***"


@dataclass
class StepContext:
    """Everything a step handler needs to execute one step."""

    run: Run
    job: JobSpec
    step: StepSpec
    index: int
    workspace: Path
    env: dict[str, str]
    inputs: dict[str, Any]
    masks: list[str] = field(default_factory=list)


@dataclass
class StepOutcome:
    success: bool
    exit_code: int | None = None
    output: str = ""
    error_message: str | None = None


StepHandler = Callable[[StepContext], Awaitable[StepOutcome]]


class StepExecutor:
    """Executes the steps of one job at a time, sequentially.

    Usage:
        executor = StepExecutor(store, workspace_root=Path(".gantry-data/workspaces"))
        execution = await executor.run(run, job_spec, execution, cancel_event=event)
    """

    def __init__(
        self,
        store: RunStateStore,
        *,
        workspace_root: Path,
        secrets: SecretsStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        shell: str = "/bin/sh",
        container_cli: str = "docker",
        infra_retries: int = 2,
        retry_backoff: float = 1.0,
        output_tail_chars: int = 4000,
        keep_workspaces: bool = True,
        base_env: Mapping[str, str] | None = None,
    ):
        self._store = store
        self._workspace_root = Path(workspace_root)
        self._secrets = secrets
        self._http_client = http_client
        self._shell = shell
        self._container_cli = container_cli
        self._infra_retries = infra_retries
        self._retry_backoff = retry_backoff
        self._output_tail_chars = output_tail_chars
        self._keep_workspaces = keep_workspaces
        self._base_env = dict(base_env) if base_env is not None else _inherited_env()

        self._handlers: dict[StepKind, StepHandler] = {
            StepKind.COMMAND: self._run_command,
            StepKind.BUILD_IMAGE: self._build_image,
            StepKind.PUSH_IMAGE: self._push_image,
            StepKind.NOTIFY: self._notify,
            StepKind.SCRIPT: self._run_script,
        }

    # ── Paths ────────────────────────────────────────────────────────────────

    def workspace_for(self, run_id: str, job_id: str) -> Path:
        return self._workspace_root / run_id / job_id

    def log_path_for(self, run_id: str, job_id: str, index: int) -> Path:
        # Logs live beside the workspaces so they survive workspace cleanup
        return self._workspace_root / run_id / ".logs" / job_id / f"{index:03d}.log"

    # ── Job Execution ────────────────────────────────────────────────────────

    async def run(
        self,
        run: Run,
        job: JobSpec,
        execution: JobExecution,
        *,
        env: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> JobExecution:
        """Run every step of ``job`` in order and return the updated execution.

        ``env`` is the workflow-level environment. The returned execution is
        Succeeded, Failed, or Cancelled (cancel event seen between steps).
        If the task is cancelled mid-step, the step's process is killed, a
        cancelled StepResult is recorded, and CancelledError propagates.
        """
        workspace = self.workspace_for(run.run_id, job.id)
        workspace.mkdir(parents=True, exist_ok=True)
        execution.status = JobStatus.RUNNING

        try:
            for index, step in enumerate(job.steps):
                if cancel_event is not None and cancel_event.is_set():
                    execution.status = JobStatus.CANCELLED
                    execution.error_message = f"Cancelled before step '{step.display_name}'"
                    logger.info("Job '%s' cancelled (run %s)", job.id, run.run_id)
                    return execution

                started_at = datetime.now(timezone.utc)
                try:
                    result = await self._run_step(run, job, step, index, workspace, env or {})
                except asyncio.CancelledError:
                    result = StepResult(
                        index=index,
                        name=step.display_name,
                        kind=step.kind,
                        error_message="Step cancelled",
                        started_at=started_at,
                        completed_at=datetime.now(timezone.utc),
                    )
                    await self._record(run, execution, result)
                    raise

                result.started_at = started_at
                await self._record(run, execution, result)

                if not result.success and not result.continued:
                    execution.status = JobStatus.FAILED
                    execution.error_message = (
                        f"Step '{result.name}' failed: {result.error_message or 'unknown error'}"
                    )
                    logger.info(
                        "Job '%s' failed at step %d '%s' (run %s)",
                        job.id,
                        index,
                        result.name,
                        run.run_id,
                    )
                    return execution

            execution.status = JobStatus.SUCCEEDED
            return execution
        finally:
            if not self._keep_workspaces:
                shutil.rmtree(workspace, ignore_errors=True)

    async def _record(self, run: Run, execution: JobExecution, result: StepResult) -> None:
        await self._store.append_step_result(run.run_id, execution.job_id, result)
        execution.steps.append(result)

    async def _run_step(
        self,
        run: Run,
        job: JobSpec,
        step: StepSpec,
        index: int,
        workspace: Path,
        workflow_env: Mapping[str, str],
    ) -> StepResult:
        """Execute one step with infrastructure retries and build its StepResult."""
        handler = self._handlers[step.kind]
        masks: list[str] = []
        attempts = 0

        try:
            ctx = StepContext(
                run=run,
                job=job,
                step=step,
                index=index,
                workspace=workspace,
                env=self._build_env(run, job, step, workspace, workflow_env, masks),
                inputs=self._interpolate_inputs(step.with_, run, job, masks),
                masks=masks,
            )
            while True:
                attempts += 1
                try:
                    outcome = await handler(ctx)
                    break
                except InfrastructureError as exc:
                    if attempts > self._infra_retries:
                        outcome = StepOutcome(
                            success=False,
                            error_message=(
                                f"Infrastructure error after {attempts} attempt(s): {exc}"
                            ),
                        )
                        break
                    delay = self._retry_backoff * (2 ** (attempts - 1))
                    logger.warning(
                        "Step %d '%s' of job '%s' hit infrastructure error, "
                        "retrying in %.1fs (attempt %d/%d): %s",
                        index,
                        step.display_name,
                        job.id,
                        delay,
                        attempts,
                        self._infra_retries + 1,
                        exc,
                    )
                    await asyncio.sleep(delay)
        except StepFailure as exc:
            outcome = StepOutcome(
                success=False,
                exit_code=exc.exit_code,
                output=exc.output,
                error_message=str(exc),
            )

        output = _mask(outcome.output, masks)
        log_path = self.log_path_for(run.run_id, job.id, index)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(output, encoding="utf-8")

        result = StepResult(
            index=index,
            name=step.display_name,
            kind=step.kind,
            exit_code=outcome.exit_code,
            success=outcome.success,
            continued=not outcome.success and step.continue_on_failure,
            attempts=max(attempts, 1),
            output_ref=str(log_path),
            output_tail=output[-self._output_tail_chars :] if self._output_tail_chars else "",
            error_message=_mask(outcome.error_message, masks) if outcome.error_message else None,
            completed_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Step %d '%s' of job '%s' %s (run %s, exit=%s)",
            index,
            result.name,
            job.id,
            "succeeded" if result.success else "failed",
            run.run_id,
            result.exit_code,
        )
        return result

    # ── Environment & Interpolation ──────────────────────────────────────────

    def _build_env(
        self,
        run: Run,
        job: JobSpec,
        step: StepSpec,
        workspace: Path,
        workflow_env: Mapping[str, str],
        masks: list[str],
    ) -> dict[str, str]:
        env = dict(self._base_env)
        env.update(
            {
                "CI": "true",
                "GANTRY": "true",
                "GANTRY_RUN_ID": run.run_id,
                "GANTRY_WORKFLOW": run.workflow_name,
                "GANTRY_JOB_ID": job.id,
                "GANTRY_EVENT": run.event_kind,
                "GANTRY_REF": run.ref,
                "GANTRY_SHA": run.commit or "",
                "GANTRY_ACTOR": run.actor,
                "GANTRY_REPOSITORY": run.repository,
                "GANTRY_WORKSPACE": str(workspace),
            }
        )
        for layer in (workflow_env, job.env, step.env):
            for key, value in layer.items():
                env[key] = self._interpolate(value, run, job, masks)
        return env

    def _interpolate_inputs(
        self, inputs: Mapping[str, Any], run: Run, job: JobSpec, masks: list[str]
    ) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for key, value in inputs.items():
            if isinstance(value, str):
                resolved[key] = self._interpolate(value, run, job, masks)
            elif isinstance(value, list):
                resolved[key] = [
                    self._interpolate(v, run, job, masks) if isinstance(v, str) else v
                    for v in value
                ]
            elif isinstance(value, dict):
                resolved[key] = self._interpolate_inputs(value, run, job, masks)
            else:
                resolved[key] = value
        return resolved

    def _interpolate(self, text: str, run: Run, job: JobSpec, masks: list[str]) -> str:
        """Expand ``${{ secrets.X }}``, ``${{ run.ref }}``, ``${{ job.id }}`` expressions."""

        def _replace(match: re.Match[str]) -> str:
            expr = match.group(1)
            namespace, _, key = expr.partition(".")
            if namespace == "secrets" and key:
                value = self._secrets.get(key) if self._secrets else None
                if value is None:
                    raise StepFailure(f"Secret '{key}' is not defined")
                if value:
                    masks.append(value)
                return value
            if namespace == "run":
                values = {
                    "id": run.run_id,
                    "workflow": run.workflow_name,
                    "ref": run.ref,
                    "branch": run.ref.removeprefix("refs/heads/"),
                    "commit": run.commit or "",
                    "sha": run.commit or "",
                    "short_sha": (run.commit or "")[:7],
                    "actor": run.actor,
                    "repository": run.repository,
                    "event": run.event_kind,
                }
                if key in values:
                    return values[key]
            if namespace == "job" and key == "id":
                return job.id
            raise StepFailure(f"Unknown expression '${{{{ {expr} }}}}'")

        return _EXPRESSION.sub(_replace, text)

    # ── Process Execution ────────────────────────────────────────────────────

    async def _exec(
        self,
        ctx: StepContext,
        argv: list[str],
        *,
        stdin_data: bytes | None = None,
    ) -> tuple[int, str]:
        """Run a process in the job workspace. Returns (exit_code, combined output).

        Raises InfrastructureError if the executable cannot be started.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(ctx.workspace),
                env=ctx.env,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise InfrastructureError(f"Cannot start '{argv[0]}': {exc}") from exc

        try:
            stdout, _ = await proc.communicate(stdin_data)
        except asyncio.CancelledError:
            _kill_process_group(proc)
            await proc.wait()
            raise

        return proc.returncode if proc.returncode is not None else -1, stdout.decode(
            errors="replace"
        )

    def _raise_for_tool(self, action: str, exit_code: int, output: str) -> None:
        lowered = output.lower()
        if any(marker in lowered for marker in _TRANSIENT_MARKERS):
            raise InfrastructureError(f"{action} failed with exit code {exit_code} (transient)")
        raise StepFailure(
            f"{action} failed with exit code {exit_code}", exit_code=exit_code, output=output
        )

    # ── Step Kind Handlers ───────────────────────────────────────────────────

    async def _run_command(self, ctx: StepContext) -> StepOutcome:
        command = self._interpolate(ctx.step.run or "", ctx.run, ctx.job, ctx.masks)
        exit_code, output = await self._exec(ctx, [self._shell, "-c", command])
        if exit_code != 0:
            raise StepFailure(
                f"Command exited with code {exit_code}", exit_code=exit_code, output=output
            )
        return StepOutcome(success=True, exit_code=0, output=output)

    async def _run_script(self, ctx: StepContext) -> StepOutcome:
        script = _require_input(ctx, "script")
        interpreter = str(ctx.inputs.get("interpreter") or self._shell)
        script_dir = ctx.workspace / ".gantry"
        script_dir.mkdir(parents=True, exist_ok=True)
        script_path = script_dir / f"step-{ctx.index:03d}.script"
        script_path.write_text(str(script), encoding="utf-8")

        argv = [*shlex.split(interpreter), str(script_path)]
        exit_code, output = await self._exec(ctx, argv)
        if exit_code != 0:
            raise StepFailure(
                f"Script exited with code {exit_code}", exit_code=exit_code, output=output
            )
        return StepOutcome(success=True, exit_code=0, output=output)

    async def _build_image(self, ctx: StepContext) -> StepOutcome:
        image = _require_input(ctx, "image")
        argv = [self._container_cli, "build"]
        for tag in _image_tags(ctx):
            argv += ["-t", f"{image}:{tag}"]
        dockerfile = ctx.inputs.get("dockerfile")
        if dockerfile:
            argv += ["-f", str(dockerfile)]
        for key, value in _mapping_input(ctx, "build_args").items():
            argv += ["--build-arg", f"{key}={value}"]
        argv.append(str(ctx.inputs.get("context") or "."))

        exit_code, output = await self._exec(ctx, argv)
        if exit_code != 0:
            self._raise_for_tool("Image build", exit_code, output)
        return StepOutcome(success=True, exit_code=0, output=output)

    async def _push_image(self, ctx: StepContext) -> StepOutcome:
        image = _require_input(ctx, "image")
        outputs: list[str] = []

        username = ctx.inputs.get("username")
        password = ctx.inputs.get("password")
        if username and password:
            registry = str(ctx.inputs.get("registry") or _registry_of(image))
            argv = [self._container_cli, "login", "-u", str(username), "--password-stdin"]
            if registry:
                argv.append(registry)
            exit_code, output = await self._exec(ctx, argv, stdin_data=str(password).encode())
            outputs.append(output)
            if exit_code != 0:
                self._raise_for_tool("Registry login", exit_code, "".join(outputs))

        for tag in _image_tags(ctx):
            exit_code, output = await self._exec(
                ctx, [self._container_cli, "push", f"{image}:{tag}"]
            )
            outputs.append(output)
            if exit_code != 0:
                self._raise_for_tool("Image push", exit_code, "".join(outputs))
        return StepOutcome(success=True, exit_code=0, output="".join(outputs))

    async def _notify(self, ctx: StepContext) -> StepOutcome:
        url = _require_input(ctx, "url")
        body = {
            "text": str(ctx.inputs.get("message") or ctx.inputs.get("text") or ""),
            "run_id": ctx.run.run_id,
            "workflow": ctx.run.workflow_name,
            "job_id": ctx.job.id,
            "ref": ctx.run.ref,
            "actor": ctx.run.actor,
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(str(url), json=body)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(str(url), json=body)
        except httpx.TransportError as exc:
            raise InfrastructureError(f"Notify request failed: {exc!r}") from exc

        output = f"POST {url} -> HTTP {response.status_code}\n"
        if response.status_code >= 500:
            raise InfrastructureError(f"Notify endpoint returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise StepFailure(
                f"Notify endpoint returned HTTP {response.status_code}", output=output
            )
        return StepOutcome(success=True, exit_code=0, output=output)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _inherited_env() -> dict[str, str]:
    """The server's environment minus Gantry's own credentials."""
    return {
        key: value
        for key, value in os.environ.items()
        if key not in _STRIPPED_ENV_KEYS and not key.startswith(_STRIPPED_ENV_PREFIXES)
    }


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def _mask(text: str, masks: list[str]) -> str:
    for secret in sorted(set(masks), key=len, reverse=True):
        text = text.replace(secret, _MASK)
    return text


def _require_input(ctx: StepContext, key: str) -> Any:
    value = ctx.inputs.get(key)
    if value in (None, ""):
        raise StepFailure(f"Action '{ctx.step.uses}' requires input '{key}'")
    return value


def _mapping_input(ctx: StepContext, key: str) -> dict[str, Any]:
    value = ctx.inputs.get(key)
    if value in (None, ""):
        return {}
    if not isinstance(value, dict):
        raise StepFailure(
            f"Action '{ctx.step.uses}' input '{key}' must be a mapping, "
            f"got {type(value).__name__}"
        )
    return value


def _image_tags(ctx: StepContext) -> list[str]:
    tags = ctx.inputs.get("tags")
    if isinstance(tags, str):
        tags = [tags]
    if not tags:
        tags = [ctx.inputs.get("tag") or "latest"]
    if not isinstance(tags, list) or not all(
        isinstance(t, (str, int, float)) for t in tags
    ):
        raise StepFailure(
            f"Action '{ctx.step.uses}' input 'tags' must be a string or a list of strings"
        )
    return [str(t) for t in tags]


def _registry_of(image: str) -> str:
    """Registry host of an image reference, or '' for Docker Hub images."""
    first, _, rest = image.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        return first
    return ""

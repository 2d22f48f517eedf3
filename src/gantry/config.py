"""Configuration loading for Gantry.

Reads .gantry/config.yaml and workflow definitions from .gantry/workflows/.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Hashable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from gantry.pipeline.errors import ValidationError
from gantry.pipeline.graph import WorkflowGraph, validate
from gantry.pipeline.models import parse_duration_seconds

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str
    repository: str = ""  # owner/repo of the source repository
    default_branch: str = "main"


class EngineConfig(BaseModel):
    max_concurrent_jobs: int = Field(4, ge=1)
    default_job_timeout: str | None = None  # e.g. "1h"; None = no limit

    @field_validator("default_job_timeout")
    @classmethod
    def _validate_timeout(cls, v: str | None) -> str | None:
        if v is not None:
            parse_duration_seconds(v)
        return v


class ExecutorConfig(BaseModel):
    workspace_root: str = "workspaces"  # Relative paths resolve under storage.data_dir
    keep_workspaces: bool = True
    infra_retries: int = Field(2, ge=0)
    retry_backoff: float = 1.0  # seconds, doubled per retry
    output_tail_chars: int = 4000
    container_cli: str = "docker"
    shell: str = "/bin/sh"


class ApprovalsConfig(BaseModel):
    expiry: str | None = None  # Off by default
    sweep_interval: float = 30.0  # seconds between expiry sweeps; 0 disables

    @field_validator("expiry")
    @classmethod
    def _validate_expiry(cls, v: str | None) -> str | None:
        if v is not None:
            parse_duration_seconds(v)
        return v


class NotificationsConfig(BaseModel):
    webhook_url: str | None = None
    max_retries: int = Field(3, ge=0)
    retry_backoff: float = 0.5
    timeout: float = 10.0
    queue_size: int = Field(1000, ge=1)
    log: bool = True  # Also write notifications to the log


class StorageConfig(BaseModel):
    data_dir: str = ".gantry-data"
    db_name: str = "gantry.db"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    rate_limit_max: int = 60  # webhook deliveries per minute per source


class GantryConfig(BaseModel):
    """Top-level Gantry configuration (matches .gantry/config.yaml)."""

    project: ProjectConfig
    engine: EngineConfig = Field(default_factory=EngineConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    approvals: ApprovalsConfig = Field(default_factory=ApprovalsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    def data_path(self, repo_root: Path) -> Path:
        data_dir = Path(self.storage.data_dir)
        return data_dir if data_dir.is_absolute() else repo_root / data_dir

    def workspace_path(self, repo_root: Path) -> Path:
        root = Path(self.executor.workspace_root)
        return root if root.is_absolute() else self.data_path(repo_root) / root


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(gantry_dir: Path) -> GantryConfig:
    """Load Gantry configuration from a .gantry/ directory.

    Args:
        gantry_dir: Path to the .gantry/ directory.

    Returns:
        Validated GantryConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    config_path = gantry_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Gantry config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = GantryConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("GANTRY_DATA_DIR")
    if data_dir:
        config.storage.data_dir = data_dir

    max_jobs = os.environ.get("GANTRY_MAX_CONCURRENT_JOBS")
    if max_jobs:
        try:
            config.engine.max_concurrent_jobs = max(1, int(max_jobs))
        except ValueError:
            logger.warning("Ignoring invalid GANTRY_MAX_CONCURRENT_JOBS=%r", max_jobs)

    notify_url = os.environ.get("GANTRY_NOTIFY_WEBHOOK_URL")
    if notify_url:
        config.notifications.webhook_url = notify_url

    logger.info("Loaded Gantry config: project=%s", config.project.name)
    return config


class DuplicateKeyError(yaml.YAMLError):
    def __init__(self, key: Any, mark: yaml.Mark, *, is_job: bool):
        super().__init__(f"Duplicate key '{key}' {mark}")
        self.key = key
        self.is_job = is_job


class _WorkflowLoader(yaml.SafeLoader):
    """SafeLoader that rejects repeated mapping keys instead of keeping the last one."""

    _jobs_node: yaml.Node | None = None

    def construct_document(self, node):
        if isinstance(node, yaml.MappingNode):
            for key_node, value_node in node.value:
                if isinstance(key_node, yaml.ScalarNode) and key_node.value == "jobs":
                    self._jobs_node = value_node
        return super().construct_document(node)

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            self.flatten_mapping(node)
            seen: set = set()
            for key_node, _ in node.value:
                key = self.construct_object(key_node, deep=True)
                if not isinstance(key, Hashable):
                    continue
                if key in seen:
                    raise DuplicateKeyError(
                        key, key_node.start_mark, is_job=node is self._jobs_node
                    )
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_workflow_yaml(content: str, *, name: str | None = None) -> WorkflowGraph:
    """Parse and validate one workflow YAML document.

    Repeated keys are rejected; a repeated job ID names the job.

    Raises:
        ValidationError: malformed YAML or an invalid workflow.
    """
    try:
        raw = yaml.load(content, Loader=_WorkflowLoader)
    except DuplicateKeyError as exc:
        if exc.is_job:
            raise ValidationError(
                f"Duplicate job ID '{exc.key}'", workflow=name, job_id=str(exc.key)
            ) from exc
        raise ValidationError(str(exc), workflow=name) from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML: {exc}", workflow=name) from exc
    if not isinstance(raw, dict):
        raise ValidationError("Workflow file must contain a mapping", workflow=name)
    return validate(_normalize_trigger_key(raw), name=name)


def load_workflows(workflows_dir: Path) -> dict[str, WorkflowGraph]:
    """Load and validate every workflow in .gantry/workflows/.

    The file stem is the default workflow name.

    Raises:
        ValidationError: on the first invalid workflow; nothing is returned
            for a partially valid directory.
    """
    workflows: dict[str, WorkflowGraph] = {}
    if not workflows_dir.exists():
        logger.warning("No workflows directory found at %s", workflows_dir)
        return workflows

    files = sorted([*workflows_dir.glob("*.yml"), *workflows_dir.glob("*.yaml")])
    for path in files:
        graph = parse_workflow_yaml(path.read_text(), name=path.stem)
        if graph.name in workflows:
            raise ValidationError(f"Duplicate workflow name (in {path.name})", workflow=graph.name)
        workflows[graph.name] = graph
        logger.info("Loaded workflow: %s (%d jobs)", graph.name, len(graph.job_ids))
    return workflows


def _normalize_trigger_key(raw: dict[Any, Any]) -> dict[str, Any]:
    """Map the vendor-style ``on:`` key to ``trigger:``.

    YAML 1.1 reads a bare ``on`` key as boolean True.
    """
    data = dict(raw)
    for key in (True, "on"):
        if key in data:
            value = data.pop(key)
            data.setdefault("trigger", value)
    return data

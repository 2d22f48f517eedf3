"""Gantry Server — FastAPI application that ties all components together.

Startup sequence:
1. Load .gantry/ config and validate every workflow
2. Initialize the SQLite run state store
3. Build notifier, step executor and pipeline engine
4. Recover runs that were active before the restart
5. Start Event Router consumer loop
6. Begin accepting webhooks and API calls

Shutdown:
1. Stop the Event Router
2. Stop the engine (job tasks, approval sweeper, notification drain)
3. Close the HTTP client and database
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import httpx
from fastapi import FastAPI

from gantry.api import configure as configure_api
from gantry.api import router as api_router
from gantry.config import GantryConfig, load_config, load_workflows
from gantry.event_router import EventRouter
from gantry.models import SourceEvent
from gantry.pipeline import (
    ApprovalGate,
    EnvSecretsStore,
    LogChannel,
    NotificationSink,
    PipelineEngine,
    RunStateStore,
    StepExecutor,
    WebhookChannel,
)
from gantry.security import WEBHOOK_SECRET_ENV, get_security_config
from gantry.webhook import configure as configure_webhook
from gantry.webhook import router as webhook_router

logger = logging.getLogger(__name__)


def build_notifier(config: GantryConfig, http_client: httpx.AsyncClient) -> NotificationSink:
    """Create the notification sink with the channels the config enables."""
    notifier = NotificationSink(
        max_retries=config.notifications.max_retries,
        retry_backoff=config.notifications.retry_backoff,
        queue_size=config.notifications.queue_size,
    )
    if config.notifications.log:
        notifier.add_channel(LogChannel())
    if config.notifications.webhook_url:
        notifier.add_channel(WebhookChannel(config.notifications.webhook_url, http_client))
    return notifier


def build_engine(
    config: GantryConfig,
    store: RunStateStore,
    *,
    repo_root: Path,
    http_client: httpx.AsyncClient | None = None,
    notifier: NotificationSink | None = None,
) -> PipelineEngine:
    """Wire executor, approval gate and engine from config."""
    executor = StepExecutor(
        store,
        workspace_root=config.workspace_path(repo_root),
        secrets=EnvSecretsStore(),
        http_client=http_client,
        shell=config.executor.shell,
        container_cli=config.executor.container_cli,
        infra_retries=config.executor.infra_retries,
        retry_backoff=config.executor.retry_backoff,
        output_tail_chars=config.executor.output_tail_chars,
        keep_workspaces=config.executor.keep_workspaces,
    )
    return PipelineEngine(
        store,
        executor,
        approvals=ApprovalGate(store, default_expiry=config.approvals.expiry),
        notifier=notifier,
        max_concurrent_jobs=config.engine.max_concurrent_jobs,
        default_job_timeout=config.engine.default_job_timeout,
        approval_sweep_interval=config.approvals.sweep_interval,
    )


class GantryServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None):
        self.repo_root = repo_root or Path.cwd()
        # Use GANTRY_CONFIG_DIR if set, else default to the repo's .gantry/
        config_dir = os.environ.get("GANTRY_CONFIG_DIR", "").strip()
        self.gantry_dir = Path(config_dir) if config_dir else self.repo_root / ".gantry"

        # Components (initialized in start())
        self.config: GantryConfig | None = None
        self.db: aiosqlite.Connection | None = None
        self.store: RunStateStore | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.notifier: NotificationSink | None = None
        self.engine: PipelineEngine | None = None
        self.event_queue: asyncio.Queue[SourceEvent] | None = None
        self.router: EventRouter | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        logger.info("Gantry server starting (repo=%s)", self.repo_root)

        # 1. Load config + workflows (fails fast on an invalid workflow)
        self.config = load_config(self.gantry_dir)
        workflows = load_workflows(self.gantry_dir / "workflows")
        logger.info("Loaded %d workflow(s): %s", len(workflows), list(workflows))

        # 2. Initialize database
        data_dir = self.config.data_path(self.repo_root)
        data_dir.mkdir(parents=True, exist_ok=True)
        db_path = str(data_dir / self.config.storage.db_name)
        logger.info("Run state DB path: %s", db_path)
        self.db = await aiosqlite.connect(db_path)
        self.db.row_factory = aiosqlite.Row
        self.store = RunStateStore(self.db)
        await self.store.initialize()

        # 3. Engine
        self.http_client = httpx.AsyncClient(timeout=self.config.notifications.timeout)
        self.notifier = build_notifier(self.config, self.http_client)
        self.engine = build_engine(
            self.config,
            self.store,
            repo_root=self.repo_root,
            http_client=self.http_client,
            notifier=self.notifier,
        )
        for graph in workflows.values():
            self.engine.add_workflow(graph)
        await self.engine.start()

        # 4. Recover active runs from before restart
        recovered = await self.engine.recover_active_runs()
        if recovered:
            logger.info("Recovered %d active run(s) from previous process", recovered)

        # 5. Event router + HTTP wiring
        self.event_queue = asyncio.Queue(maxsize=1000)
        self.router = EventRouter(self.event_queue, self.store, self.engine)
        configure_webhook(
            self.event_queue,
            webhook_secret=os.environ.get(WEBHOOK_SECRET_ENV),
            expected_repository=self.config.project.repository or None,
            rate_limit_max=self.config.server.rate_limit_max,
        )
        configure_api(self.engine)
        await self.router.start()

        logger.info("Gantry server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("Gantry server shutting down")

        if self.router:
            await self.router.stop()
        if self.engine:
            await self.engine.stop()
        if self.http_client:
            await self.http_client.aclose()
        if self.store:
            await self.store.close()

        logger.info("Gantry server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = GantryServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = GantryServer(repo_root)

    app = FastAPI(
        title="Gantry",
        version="0.1.0",
        description="Pipeline orchestration engine",
        lifespan=lifespan,
    )

    # Mount routes
    app.include_router(webhook_router)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        engine = _server.engine
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "workflows": len(engine.list_workflows()) if engine else 0,
            "active_runs": len(engine.scheduler.active_run_ids()) if engine else 0,
            "queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
            "notifications_dropped": _server.notifier.dropped if _server.notifier else 0,
            "security": get_security_config(),
        }

    return app

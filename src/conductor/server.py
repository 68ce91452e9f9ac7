"""Conductor Server — FastAPI application that ties all components together.

Startup sequence:
1. Load conductor.yaml (plus environment overrides)
2. Initialize the SQLite registry
3. Start the SCM client and notification handlers
4. Wire the webhook and build routers
5. Begin accepting requests

Shutdown:
1. Drain in-flight notifications
2. Close HTTP clients
3. Close database
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from conductor import auth
from conductor.api import configure as configure_api
from conductor.api import router as api_router
from conductor.builds import BuildLifecycleManager
from conductor.cascade import TriggerCascade
from conductor.config import ConductorConfig, load_config
from conductor.errors import ConductorError, InternalError
from conductor.events import EventBatchCreator, EventFactory
from conductor.fanout import BranchFanoutResolver
from conductor.notifications import NotificationBus, WebhookNotifier, log_build_status
from conductor.pull_requests import PullRequestLifecycle
from conductor.registry import Registry
from conductor.scm import GitHubScm
from conductor.sync import PipelineSyncer
from conductor.webhook import WebhookEventRouter
from conductor.webhook import configure as configure_webhook
from conductor.webhook import router as webhook_router

logger = logging.getLogger(__name__)


class ConductorServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config_path: Path | None = None, config: ConductorConfig | None = None):
        self.config_path = config_path or Path("conductor.yaml")

        # Components (initialized in start())
        self.config: ConductorConfig | None = config
        self.registry: Registry | None = None
        self.scm: GitHubScm | None = None
        self.notifications: NotificationBus | None = None
        self.webhook_notifier: WebhookNotifier | None = None
        self.lifecycle: BuildLifecycleManager | None = None
        self.event_router: WebhookEventRouter | None = None

    async def start(self) -> None:
        """Initialize all components and wire the routers."""
        # 1. Load config
        if self.config is None:
            self.config = load_config(self.config_path)
        config = self.config

        # 2. Initialize database
        db_path = Path(config.database.path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Registry DB path: %s", db_path)
        self.registry = Registry(str(db_path))
        await self.registry.initialize()

        # 3. SCM client and notifications
        self.scm = GitHubScm(
            scm_context=config.scm.context,
            display_name=config.scm.display_name,
            api_url=config.scm.api_url,
            host=config.scm.host,
            config_path=config.scm.config_path,
            webhook_secret=config.scm.webhook_secret,
        )
        await self.scm.start()

        self.notifications = NotificationBus()
        self.notifications.on(log_build_status)
        if config.notifications.webhook_urls:
            self.webhook_notifier = WebhookNotifier(
                config.notifications.webhook_urls, timeout=config.notifications.timeout
            )
            await self.webhook_notifier.start()
            self.notifications.on(self.webhook_notifier)

        # 4. Core components
        event_factory = EventFactory(self.registry, self.scm)
        batch_creator = EventBatchCreator(event_factory, self.scm)
        fanout = BranchFanoutResolver(self.registry, self.scm)
        syncer = PipelineSyncer(self.registry, self.scm)

        self.lifecycle = BuildLifecycleManager(
            self.registry,
            self.scm,
            TriggerCascade(self.registry, event_factory),
            self.notifications,
            config.auth,
            config.server.ui_uri,
        )
        self.event_router = WebhookEventRouter(
            self.registry,
            self.scm,
            fanout,
            batch_creator,
            PullRequestLifecycle(
                self.registry,
                syncer,
                fanout,
                batch_creator,
                default_restrict_pr=config.webhooks.default_restrict_pr,
            ),
            generic_username=config.webhooks.username,
            ignore_commits_by=config.webhooks.ignore_commits_by,
        )

        auth.configure(config.auth)
        configure_api(self.lifecycle)
        configure_webhook(self.event_router)

        logger.info("Conductor server started")

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("Conductor server shutting down")

        if self.notifications:
            await self.notifications.drain()
        if self.webhook_notifier:
            await self.webhook_notifier.close()
        if self.scm:
            await self.scm.close()
        if self.registry:
            await self.registry.close()

        logger.info("Conductor server stopped")


# ── Error Handlers ───────────────────────────────────────────────────────────


async def conductor_error_handler(request: Request, exc: ConductorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def scm_error_handler(request: Request, exc: httpx.HTTPError) -> JSONResponse:
    logger.error("SCM request failed during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "statusCode": 500,
            "error": "Internal Server Error",
            "message": "SCM request failed",
        },
    )


async def database_error_handler(request: Request, exc: aiosqlite.Error) -> JSONResponse:
    logger.error("Database error during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "statusCode": 500,
            "error": "Internal Server Error",
            "message": "Database operation failed",
        },
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled %s during %s %s: %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc,
    )
    return JSONResponse(status_code=500, content=InternalError("Internal server error").to_dict())


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = ConductorServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(
    config_path: Path | None = None, config: ConductorConfig | None = None
) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = ConductorServer(config_path, config)

    app = FastAPI(
        title="Conductor",
        version="0.1.0",
        description="CI orchestration: build lifecycle, trigger cascades and SCM webhooks",
        lifespan=lifespan,
    )

    app.add_exception_handler(ConductorError, conductor_error_handler)
    app.add_exception_handler(httpx.HTTPError, scm_error_handler)
    app.add_exception_handler(aiosqlite.Error, database_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    # Mount routes
    app.include_router(webhook_router)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "scm": _server.config.scm.context if _server.config else None,
        }

    return app

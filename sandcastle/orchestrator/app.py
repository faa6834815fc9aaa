from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.routing import APIRouter
from loguru import logger
from sse_starlette.sse import AppStatus

from sandcastle.orchestrator.broadcaster import BuildBroadcaster, StreamingBuilds
from sandcastle.orchestrator.collaborators import (
    ContextForwarder,
    ContextSink,
    HttpContextSink,
    HttpProjectDirectory,
    NullContextSink,
    ProjectDirectory,
    UnconfiguredProjectDirectory,
)
from sandcastle.orchestrator.db.engine import create_engine, create_session_factory
from sandcastle.orchestrator.execution.commands import ExecutionService
from sandcastle.orchestrator.execution.devserver import DevServerLauncher
from sandcastle.orchestrator.execution.preview import PreviewResolver
from sandcastle.orchestrator.log import setup_logging
from sandcastle.orchestrator.managers.builds import BuildManager
from sandcastle.orchestrator.managers.workspaces import WorkspaceManager
from sandcastle.orchestrator.provider.daytona import DaytonaProvider
from sandcastle.orchestrator.registry import SessionRegistry
from sandcastle.orchestrator.settings import SandcastleSettings, get_settings
from sandcastle.orchestrator.store.sql import SqlRepository

# ---------------------------------------------------------------------------
# Shared singletons initialised during lifespan
# ---------------------------------------------------------------------------
registry = SessionRegistry()

_COLLABORATOR_TIMEOUT = 10.0


def _create_context_sink(settings: SandcastleSettings, client: httpx.AsyncClient) -> ContextSink:
    if settings.context_service_url:
        return HttpContextSink(client, settings.context_service_url)
    logger.warning("SANDCASTLE_CONTEXT_SERVICE_URL not set -- error forwarding disabled")
    return NullContextSink()


def _create_project_directory(settings: SandcastleSettings, client: httpx.AsyncClient) -> ProjectDirectory:
    if settings.project_service_url:
        return HttpProjectDirectory(client, settings.project_service_url)
    logger.warning("SANDCASTLE_PROJECT_SERVICE_URL not set -- on-demand project workspaces disabled")
    return UnconfiguredProjectDirectory()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level)

    logger.info("Sandcastle orchestrator starting (host={}, port={})", settings.host, settings.port)

    # -- Initialise state fields (always present, possibly None) ----------------
    _app.state.db_engine = None
    _app.state.repository = None
    _app.state.provider = None
    _app.state.http_client = None
    _app.state.forwarder = None
    _app.state.workspace_manager = None
    _app.state.execution = None
    _app.state.dev_servers = None
    _app.state.previews = None
    _app.state.build_manager = None
    _app.state.broadcaster = None
    _app.state.streaming_builds = None

    # -- Database --------------------------------------------------------------
    if settings.database_url:
        engine = create_engine(settings.database_url)
        _app.state.db_engine = engine
        _app.state.repository = SqlRepository(create_session_factory(engine))
        logger.info("PostgreSQL: connected (pool_size=5, max_overflow=10)")
    else:
        logger.warning("SANDCASTLE_DATABASE_URL not set -- workspace and build features disabled")

    # -- Sandbox provider ------------------------------------------------------
    provider = DaytonaProvider.from_settings(settings)
    _app.state.provider = provider
    if provider is None:
        logger.warning("SANDCASTLE_DAYTONA_API_KEY not set -- provisioning will fail with a configuration error")
    else:
        logger.info("Daytona: client ready (target={})", settings.daytona_target or "default")

    # -- Collaborators ---------------------------------------------------------
    http_client = httpx.AsyncClient(timeout=_COLLABORATOR_TIMEOUT)
    _app.state.http_client = http_client
    forwarder = ContextForwarder(_create_context_sink(settings, http_client))
    _app.state.forwarder = forwarder
    projects = _create_project_directory(settings, http_client)

    # -- SSE -------------------------------------------------------------------
    # Let build streams deliver their final event on shutdown instead of
    # being cut off; uvicorn waits for open connections to close.
    AppStatus.disable_automatic_graceful_drain()

    # -- Managers --------------------------------------------------------------
    repository = _app.state.repository
    if repository is not None:
        execution = ExecutionService(repository, provider, registry, settings)
        build_manager = BuildManager(repository, execution, forwarder, settings)
        broadcaster = BuildBroadcaster(repository, settings)

        _app.state.workspace_manager = WorkspaceManager(repository, provider, projects, settings)
        _app.state.execution = execution
        _app.state.dev_servers = DevServerLauncher(execution, forwarder)
        _app.state.previews = PreviewResolver(execution, repository, http_client)
        _app.state.build_manager = build_manager
        _app.state.broadcaster = broadcaster
        _app.state.streaming_builds = StreamingBuilds(build_manager, broadcaster)
        logger.info("Managers: initialised")

    yield

    # -- Shutdown --------------------------------------------------------------
    build_manager = _app.state.build_manager
    logger.info(
        "Sandcastle orchestrator shutting down (running_builds={}, sessions={})",
        build_manager.running_count if build_manager is not None else 0,
        registry.active_count,
    )

    # 1. Let running builds finish, then cancel what is left.
    if build_manager is not None:
        if build_manager.running_count > 0:
            timeout = settings.graceful_shutdown_timeout
            logger.info("Waiting for {} running builds (timeout={}s)...", build_manager.running_count, timeout)
            if not await build_manager.wait_until_idle(timeout=timeout):
                logger.warning("Builds still running after {}s, cancelling", timeout)
        await build_manager.close()

    # 2. Signal SSE streams to close, then stop the monitors feeding them.
    AppStatus.should_exit = True
    logger.info("SSE: signalled streams to close")
    if _app.state.broadcaster is not None:
        await _app.state.broadcaster.shutdown()

    # 3. Close PTYs and pending execution tasks.
    if _app.state.execution is not None:
        await _app.state.execution.close()

    # 4. Flush forwarded errors.
    if not await forwarder.drain(timeout=5.0):
        logger.warning("Context forwarding did not drain, dropping pending items")
    await forwarder.close()

    if provider is not None:
        await provider.close()
        logger.info("Daytona: closed")

    await http_client.aclose()

    # Dispose DB engine (closes all pooled connections).
    if _app.state.db_engine is not None:
        await _app.state.db_engine.dispose()
        logger.info("PostgreSQL: disposed")


app = FastAPI(title="Sandcastle Orchestrator", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- all backend endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


# -- Routers -----------------------------------------------------------------
from sandcastle.orchestrator.routers.builds import router as builds_router  # noqa: E402
from sandcastle.orchestrator.routers.execution import router as execution_router  # noqa: E402
from sandcastle.orchestrator.routers.workspaces import router as workspaces_router  # noqa: E402

api.include_router(workspaces_router)
api.include_router(execution_router)
api.include_router(builds_router)

app.include_router(api)

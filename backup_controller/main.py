"""
Main application entry point.
ArangoBackup controller with health and metrics endpoints.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import sentry_sdk
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator

from backup_controller.api.v1 import health
from backup_controller.config.logging import configure_logging, get_logger
from backup_controller.config.settings import settings
from backup_controller.core.backup_handler import BackupHandler
from backup_controller.core.lock_manager import DeploymentLockRegistry
from backup_controller.core.status_updater import StatusUpdater
from backup_controller.services.arango_client import ArangoClientFactory
from backup_controller.services.event_recorder import EventRecorder
from backup_controller.services.kubernetes_store import KubernetesStore, create_api_client
from backup_controller.workers.operator import Operator
from backup_controller.workers.refresher import PeriodicRefresher

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Initialize Sentry for error tracking (production)
if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    Starts the controller in one process:
    1. Work queue runtime (watch, resync, workers) feeding the backup handler
    2. Periodic refresher importing out-of-band backups
    """
    logger.info(
        "application_starting",
        version=settings.app_version,
        environment=settings.environment,
        namespace=settings.namespace,
    )

    background_tasks = []

    try:
        api_client = await create_api_client(settings)

        store = KubernetesStore(api_client, settings)
        event_recorder = EventRecorder(api_client, settings.component_name)
        client_factory = ArangoClientFactory(settings)
        locks = DeploymentLockRegistry()
        status_updater = StatusUpdater(store)

        operator = Operator(store, settings)
        operator.register_handler(
            BackupHandler(
                store=store,
                status_updater=status_updater,
                locks=locks,
                event_recorder=event_recorder,
                client_factory=client_factory,
                operator=operator,
                settings=settings,
            )
        )
        refresher = PeriodicRefresher(store, status_updater, locks, client_factory, settings)

        await operator.start()
        background_tasks.append(asyncio.create_task(refresher.start()))

        app.state.operator = operator
        app.state.refresher = refresher

        logger.info(
            "application_started",
            version=settings.app_version,
            workers=settings.operator_workers,
        )

    except KeyboardInterrupt:
        logger.info("application_startup_interrupted")
        raise
    except Exception as e:
        logger.error("application_startup_failed", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await refresher.stop()
    await operator.stop()

    for task in background_tasks:
        task.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(*background_tasks, return_exceptions=True),
            timeout=30.0,
        )
        logger.info("background_tasks_stopped")
    except asyncio.TimeoutError:
        logger.warning("background_tasks_shutdown_timeout")

    await event_recorder.flush()

    try:
        await client_factory.close()
        await api_client.close()
        logger.info("connections_closed")
    except Exception as e:
        logger.error("connection_close_error", error=str(e))

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Kubernetes controller reconciling ArangoBackup resources",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    openapi_url="/openapi.json" if not settings.is_production else None,
    lifespan=lifespan,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests (probes and scrapes only, so at debug level)."""
    response = await call_next(request)

    logger.debug(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
    )

    return response


# Initialize Prometheus metrics
if settings.prometheus_enabled:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "namespace": settings.namespace,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    # uvicorn handles SIGINT/SIGTERM and runs the lifespan shutdown
    uvicorn.run(
        "backup_controller.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )

from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from discovery.api.router import api_router
from discovery.core.config import get_settings
from discovery.core.telemetry import (
    TelemetryRuntime,
    configure_api_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from discovery.services.discovery import get_discovery_service
from discovery.services.repository import get_repository
from discovery.services.search_index import bootstrap_search_indexes, get_search_index

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        "discovery api starting environment=%s search_index=%s database=%s",
        settings.environment,
        "meilisearch" if settings.search_index_configured else "none",
        "configured" if settings.database_url else "none",
    )
    if settings.index_bootstrap_on_startup:
        await bootstrap_search_indexes(
            get_search_index(),
            get_repository(),
            sync=settings.index_sync_on_startup,
            batch_size=settings.index_batch_size,
        )
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        # Next startup rebuilds the pool and the snapshot cache from current settings.
        get_discovery_service.cache_clear()
        get_search_index.cache_clear()
        get_repository.cache_clear()


configure_api_logging(settings)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s query=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        request.url.query or "-",
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)

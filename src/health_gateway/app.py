"""
Health Gateway - FastAPI application bootstrap

Builds the single cache manager for the process, starts cache warming and
wires the edge cache middleware. Route modules read the manager through
the `get_cache_manager` dependency.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from starlette.middleware.base import BaseHTTPMiddleware

from ..shared.caching import (
    CacheManager,
    CacheOptions,
    CacheWarmer,
    EntityDataSource,
    create_cache_manager,
    create_default_warm_tasks,
)
from ..shared.config import Settings, get_config_summary, get_settings
from ..shared.logging_config import CorrelationContext, get_logger
from ..shared.metrics_collector import get_metrics_collector
from .cache_control import (
    ENTITY_CACHE_POLICIES,
    EdgeCacheMiddleware,
    ResponseCacheMiddleware,
    ResponseHook,
    apply_entity_cache_headers,
    invalidate_cache,
)

logger = get_logger(__name__, 'health_gateway')

ENTITY_ROUTE_PREFIXES = {
    'providers': '/api/providers',
    'patients': '/api/patients',
    'claims': '/api/claims',
    'fhir': '/api/fhir',
    'charts': '/api/charts',
}


def default_edge_routes() -> Dict[str, List[ResponseHook]]:
    """Edge cache hooks for the standard entity routes."""
    routes = {}
    for entity_type, prefix in ENTITY_ROUTE_PREFIXES.items():
        routes[prefix] = [
            apply_entity_cache_headers(entity_type),
            invalidate_cache(ENTITY_CACHE_POLICIES[entity_type].tags),
        ]
    return routes


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID to each request and logs its outcome."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        with CorrelationContext(correlation, request_id):
            response = await call_next(request)
            duration = time.perf_counter() - start_time
            logger.info(
                "Request completed",
                operation="http_request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )

        response.headers["X-Correlation-ID"] = correlation
        get_metrics_collector().get_histogram('http_request_duration_seconds').observe(
            duration, method=request.method, status=response.status_code
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Connects the cache on startup, starts warm-up, and tears both down on exit.
    """
    settings: Settings = app.state.settings
    logger.info("Starting Smart Health Hub gateway...", operation="startup",
                config=get_config_summary(settings))

    manager = create_cache_manager(settings, client=app.state.redis_client)
    await manager.initialize()
    app.state.cache_manager = manager

    warmer = None
    data_source: Optional[EntityDataSource] = app.state.data_source
    if data_source is not None:
        warmer = CacheWarmer(manager, default_interval=settings.cache.cache_warm_up_interval)
        for task in create_default_warm_tasks(data_source):
            warmer.register_task(task)
        if settings.cache.cache_warm_up_enabled:
            warmer.schedule_warm_up()
    app.state.cache_warmer = warmer

    logger.info("Gateway startup completed", operation="startup")

    try:
        yield
    finally:
        logger.info("Shutting down Smart Health Hub gateway...", operation="shutdown")
        if warmer is not None:
            await warmer.shutdown()
        await manager.close()
        logger.info("Gateway shutdown completed", operation="shutdown")


def get_cache_manager(request: Request) -> CacheManager:
    """FastAPI dependency returning the process cache manager."""
    return request.app.state.cache_manager


def create_app(
    data_source: Optional[EntityDataSource] = None,
    settings: Optional[Settings] = None,
    redis_client: Optional[Redis] = None,
    edge_routes: Optional[Dict[str, List[ResponseHook]]] = None,
    response_cache_prefixes: Optional[List[str]] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        data_source: Collections to warm the cache from; no warming without one
        settings: Settings override, mainly for tests
        redis_client: Pre-built Redis client to use instead of the configured URL
        edge_routes: Path prefix to edge cache hooks; defaults to the entity routes
        response_cache_prefixes: Path prefixes whose GET responses are cached whole; none by default

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.data_source = data_source
    app.state.redis_client = redis_client

    # Last added runs first; the response cache sits inside the edge hooks
    if response_cache_prefixes:
        app.add_middleware(
            ResponseCacheMiddleware,
            prefixes=response_cache_prefixes,
            options=CacheOptions(ttl=settings.cache.cache_response_ttl),
        )
    app.add_middleware(EdgeCacheMiddleware, routes=edge_routes if edge_routes is not None else default_edge_routes())
    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/health/cache")
    async def cache_health(manager: CacheManager = Depends(get_cache_manager)):
        """Cache health; 503 when degraded."""
        health = await manager.health_check()
        status_code = 200 if health["status"] == "healthy" else 503
        return JSONResponse(status_code=status_code, content=health)

    @app.get("/metrics/cache")
    async def cache_stats(request: Request, manager: CacheManager = Depends(get_cache_manager)):
        """Cache and warmer statistics."""
        warmer: Optional[CacheWarmer] = request.app.state.cache_warmer
        return {
            "cache": manager.get_stats(),
            "warming": warmer.get_stats() if warmer is not None else None,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.exception(f"Unhandled exception: {exc}", operation="exception_handler")
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "type": "internal_server_error",
                    "message": "An internal server error occurred",
                    "request_id": getattr(request.state, "request_id", None),
                }
            },
        )

    return app


def run_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Run the gateway with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "src.health_gateway.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_config=None,
        access_log=settings.debug,
    )


if __name__ == "__main__":
    run_server(reload=get_settings().debug)

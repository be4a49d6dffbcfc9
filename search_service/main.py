"""Search service main application."""

import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from searchlibs.common.config import get_config
from searchlibs.common.logging import configure_logging

from .api.routes import router as api_router
from .hybrid.search_manager import SearchManager
from .runtime.metrics import MetricsCollector, get_metrics_collector

logger = structlog.get_logger("search_service")

SERVICE_NAME = "search-service"
VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    A search manager already placed on ``app.state`` (e.g. by tests) is used
    as-is; otherwise one is built from the process configuration.
    """
    # Startup
    config = get_config()
    configure_logging(SERVICE_NAME, config.search_log_level, config.search_log_format)

    logger.info("Starting search service", env=config.search_env)

    if getattr(app.state, "metrics_collector", None) is None:
        app.state.metrics_collector = get_metrics_collector(SERVICE_NAME)
    if getattr(app.state, "search_manager", None) is None:
        app.state.search_manager = SearchManager.from_config(config, metrics=app.state.metrics_collector)

    logger.info("Search service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down search service")
    await app.state.search_manager.cleanup()
    logger.info("Search service shutdown complete")


def create_app(
    search_manager: Optional[SearchManager] = None,
    metrics_collector: Optional[MetricsCollector] = None,
) -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Search Service",
        description="Unified lexical, semantic and relational search with result fusion",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.search_manager = search_manager
    app.state.metrics_collector = metrics_collector

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add processing time header to responses."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.error("Unhandled request error", path=request.url.path, error=str(e))
            status_code = 500
            response = JSONResponse(
                status_code=500,
                content={"error": "Internal server error"}
            )

        duration = time.time() - start_time

        collector = getattr(app.state, "metrics_collector", None)
        if collector is not None:
            collector.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=status_code,
                duration=duration
            )

        return response

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        manager = getattr(app.state, "search_manager", None)
        if manager is None:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME}
            )

        try:
            health = await manager.health_check()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME}
            )

        content = {"service": SERVICE_NAME, **health}
        status_code = 503 if health["status"] == "unhealthy" else 200
        return JSONResponse(status_code=status_code, content=content)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        collector = getattr(app.state, "metrics_collector", None)
        if collector is not None:
            return Response(content=collector.get_metrics(), media_type="text/plain")
        return Response(content="# No metrics available\n", media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "search": "/api/v1/search",
                "suggestions": "/api/v1/search/suggestions",
                "docs": "/api/v1/search/docs",
                "similar": "/api/v1/search/similar/{entity_id}",
                "stats": "/api/v1/search/stats",
                "cache": "/api/v1/cache",
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "search_service.main:app",
        host="0.0.0.0",
        port=get_config().search_port,
        log_level="info"
    )

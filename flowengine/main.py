"""FastAPI ingress for the workflow execution engine."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from flowengine import __version__
from flowengine.core.container import container
from flowengine.core.logging import configure_logging, get_logger
from flowengine.routers import executions

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    settings = container.settings()
    logger.info("Starting flowengine", version=__version__)

    await container.cache().startup()

    recovery = container.recovery()
    if settings.recovery_enabled:
        incomplete = await recovery.scan_on_startup()
        if incomplete:
            logger.info("Found incomplete executions on startup",
                        count=len(incomplete),
                        execution_ids=incomplete)
        # The first sweep resumes them
        await recovery.start()

    logger.info("Services started successfully")
    yield

    if settings.recovery_enabled:
        await recovery.stop()
    await container.scheduler().shutdown()
    await container.publisher().close()
    await container.cache().shutdown()
    logger.info("Services shutdown complete")


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error=f"{type(e).__name__}: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": {"code": "INTERNAL_ERROR", "message": f"{type(e).__name__}: {e}"},
                    "detail": "Internal server error"
                }
            )


def create_app() -> FastAPI:
    """Build the application from the container's settings."""
    settings = container.settings()
    configure_logging(settings)
    for noisy in ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app = FastAPI(
        title="flowengine",
        version=__version__,
        description="Durable workflow execution engine",
        lifespan=lifespan,
        default_response_class=ORJSONResponse
    )

    # Exception middleware first, CORS after it
    app.add_middleware(CatchAllExceptionsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(executions.router)
    app.include_router(executions.ws_router)

    @app.get("/health")
    async def health_check():
        """Detailed health check."""
        cache = container.cache()
        recovery = container.recovery()
        return {
            "status": "OK",
            "service": "flowengine",
            "version": __version__,
            "environment": "development" if settings.debug else "production",
            "redis_enabled": settings.redis_enabled,
            "redis_available": cache.is_redis_available(),
            "execution_engine": {
                "recovery_sweeper": recovery.running,
                "dlq_enabled": settings.dlq_enabled,
                "max_parallel_nodes": settings.max_parallel_nodes,
                "subscribers": container.publisher().subscriber_count(),
            },
            "timestamp": datetime.now().isoformat()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = container.settings()
    logger.info("Starting flowengine", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "flowengine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="warning"
    )

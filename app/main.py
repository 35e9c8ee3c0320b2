# app/main.py
"""
HTTP entry point: health checks plus the hooks the host forum calls.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.routes import health, hooks
from app.services.redis_client import fast_redis
from app.services.unsub_dispatcher import get_dispatcher

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info(
        "Application starting",
        environment=settings.environment,
        enabled=settings.UNSUB_UPDATE_ENABLED,
    )

    startup_tasks = []

    try:
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        await fast_redis.initialize()
        startup_tasks.append("redis")

        # Subscribes the dispatcher to the in-process preference feed
        get_dispatcher()

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "redis" in startup_tasks:
            try:
                await fast_redis.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    logger.info("Application shutting down")
    await fast_redis.close()
    await db_pool.close()


app = FastAPI(
    title="Unsub Update Bridge",
    description="Relays digest and mail opt-outs from the forum to the postback endpoint",
    version="1.0.2",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(hooks.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

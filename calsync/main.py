"""Main FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from calsync.config import get_settings
from calsync.database import close_database, get_database
from calsync.errors import SyncError
from calsync.utils.tasks import pending_task_names

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

settings = get_settings()
logging.getLogger().setLevel(settings.log_level.upper())

# Rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting calendar sync service...")
    logger.info(f"Public URL: {settings.public_url}")
    logger.info(f"Database: {settings.database_path}")

    await get_database()
    logger.info("Database initialized")

    try:
        from calsync.encryption import get_encryption_manager
        get_encryption_manager()
        logger.info("Encryption manager initialized")
    except RuntimeError as e:
        logger.warning(f"Could not initialize encryption: {e}")

    try:
        from calsync.jobs.scheduler import setup_scheduler
        setup_scheduler()
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")

    yield

    logger.info("Shutting down...")

    try:
        from calsync.jobs.scheduler import shutdown_scheduler
        shutdown_scheduler()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")

    await close_database()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Calendar Sync",
    description="External calendar synchronization service",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    try:
        db = await get_database()
        await db.execute("SELECT 1")
        return {
            "status": "healthy",
            "database": "connected",
            "background_tasks": pending_task_names(),
        }
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e)},
        )


from calsync.api import api_router  # noqa: E402
from calsync.auth.routes import router as auth_router  # noqa: E402

app.include_router(auth_router)
app.include_router(api_router)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Structured error payload with a machine-readable reason."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Internal server error", "retryable": True},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calsync.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=settings.log_level.lower(),
        reload=False,
    )

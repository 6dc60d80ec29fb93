import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .api.v1.endpoints import limiter, router as provider_router
from .config import get_settings
from .dependencies import close_service_container, init_service_container
from .logging_config import setup_logging

# Setup structured logging based on environment
_settings = get_settings()
setup_logging(
    level=_settings.LOG_LEVEL,
    use_json=_settings.use_json_logs,
    service_name=_settings.SERVICE_NAME
)
logger = logging.getLogger(__name__)

_started_at = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container on startup and release its connections on shutdown."""
    logger.info("Starting provider engine", extra={"event": "startup_begin"})

    settings = get_settings()
    container = init_service_container(settings)
    providers = await container.list_providers()
    logger.info(
        f"Provider engine ready with {len(providers)} active providers",
        extra={"event": "startup_complete"}
    )

    yield

    logger.info("Shutting down provider engine", extra={"event": "shutdown_begin"})
    await close_service_container()
    logger.info("Provider engine shut down successfully", extra={"event": "shutdown_complete"})


# Create FastAPI application
app = FastAPI(
    title="Provider Engine",
    description="Configuration-driven integration engine for virtual-number SMS providers",
    version=__version__,
    lifespan=lifespan
)

# Add rate limiting error handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(provider_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Liveness probe."""
    return {
        "status": "healthy",
        "service": "provider-engine",
        "version": __version__,
        "uptime_seconds": int(time.time() - _started_at),
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("provider_engine.main:app", host=settings.HOST, port=settings.PORT)

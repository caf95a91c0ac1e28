"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from songbroker.api import generations, health, tasks
from songbroker.config import get_settings
from songbroker.db.session import init_db
from songbroker.middleware.rate_limit import limiter

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting songbroker...")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("songbroker started successfully")

    yield

    logger.info("Shutting down songbroker...")


# Create FastAPI app
app = FastAPI(
    title="songbroker",
    description="""
## AI Music Generation Tracking API

Tracks songs, instrumentals and lyrics generated by the music provider:
- **Generations**: one user request and the provider tasks it started
- **Tasks**: status, results and failures of each provider task
- **Status checks**: on-demand reconciliation with the provider

Task statuses are kept up to date in the background by per-task checks with
progressive backoff and a periodic sweep over all active tasks.

### Identity
Endpoints act on behalf of the user named in the `X-Owner-ID` header.

### Rate Limiting
Requests are rate-limited per owner. Provider calls are additionally bounded
by a shared per-minute budget; checks over that budget come back `deferred`.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# Include routers
app.include_router(health.router)
app.include_router(generations.router)
app.include_router(tasks.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service info."""
    return {
        "service": "songbroker",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "songbroker.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )

"""Main FastAPI application entry point for Ledgerline."""

import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.config import settings
from src.fsm.handlers import run_cleanup_task
from src.handlers.message_pipeline import get_pipeline
from src.handlers.webhook import limiter
from src.handlers.webhook import router as webhook_router
from src.utils.logger import log

# Initialize Sentry if enabled
if settings.enable_sentry and settings.sentry_dsn:
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=1.0 if settings.is_development else 0.1,
    )
    log.info("Sentry initialized")


async def state_cleanup_task():
    """Purge expired pending actions, idempotency records and lock leases."""
    while True:
        try:
            await asyncio.sleep(settings.cleanup_interval_seconds)
            pipeline = get_pipeline()
            stats = await run_cleanup_task(pipeline.engine.pending_store, pipeline.guard, pipeline.lock)
            log.info(f"✅ State cleanup completed: {stats}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"❌ State cleanup failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    log.info("=" * 60)
    log.info("Starting Ledgerline")
    log.info(f"Environment: {settings.environment}")
    log.info(f"State backend: {settings.state_backend}")
    log.info(f"LLM fallback: {'on' if settings.llm_fallback_enabled else 'off'}")
    log.info("=" * 60)

    os.makedirs("logs", exist_ok=True)

    # LangSmith reads its configuration from the environment
    if settings.langchain_tracing_v2 and settings.langchain_api_key:
        os.environ["LANGCHAIN_TRACING_V2"] = "true"
        os.environ["LANGCHAIN_API_KEY"] = settings.langchain_api_key
        os.environ["LANGCHAIN_PROJECT"] = settings.langchain_project
        log.info("LangSmith tracing enabled")

    cleanup_task = asyncio.create_task(state_cleanup_task())
    log.info(f"✅ Background cleanup task started (every {settings.cleanup_interval_seconds}s)")

    yield

    # Shutdown
    log.info("Shutting down Ledgerline")
    if not cleanup_task.done():
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            log.info("Cleanup task cancelled")


# Create FastAPI app
app = FastAPI(
    title="Ledgerline",
    description="WhatsApp bookkeeping and time-tracking assistant for trades",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.config = settings
app.state.limiter = limiter

app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook_router, tags=["webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Ledgerline API",
        "version": "1.0.0",
        "status": "running",
        "environment": settings.environment,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.hot_reload and settings.is_development,
        log_level=settings.log_level.lower(),
    )

"""HARVEST — FastAPI Application Entry Point.

Report dataset lifecycle orchestrator for Amazon Ads.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.event_routes import router as event_router
from app.api.report_routes import router as report_router
from app.config import settings
from app.core.logging import get_logger
from app.database import _mask_url, init_db, test_connection
from app.scheduler.context import OrchestrationContext

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 HARVEST starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    context = getattr(app.state, "context", None) or OrchestrationContext(settings)
    app.state.context = context

    if test_connection(context.engine):
        try:
            init_db(context.engine)
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")

    if not IS_SERVERLESS:
        context.start()
    yield
    await context.stop()
    logger.info("HARVEST shut down")


app = FastAPI(
    title="HARVEST",
    description="Report dataset lifecycle orchestrator: decides when each Amazon Ads report window is (re)requested, tracks it to completion and broadcasts every transition.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(report_router)
app.include_router(event_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    context = getattr(app.state, "context", None)
    return {
        "status": "healthy",
        "service": "harvest",
        "version": "1.0.0",
        "scheduler_running": bool(context and context.started),
        "subscribers": context.publisher.subscriber_count if context else 0,
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint: check database connectivity."""
    db_url = settings.effective_database_url
    context = getattr(app.state, "context", None)
    error = None
    connected = False
    try:
        connected = test_connection(context.engine) if context else False
    except Exception as e:
        error = str(e)

    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": connected,
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
        "error": error,
    }

# marketplace_orders/main.py
"""
Order Hub - Main FastAPI Application
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from sqlalchemy import text
import logging

from marketplace_orders import __version__
from marketplace_orders.common_logging import setup_logging
from marketplace_orders.common_instrumentation import setup_opentelemetry, instrument_fastapi, instrument_sqlalchemy
from marketplace_orders.api import routes
from marketplace_orders.db import database
from marketplace_orders.db.database import init_database, create_tables
from marketplace_orders.services.change_feed import ChangeFeed
from marketplace_orders.services.errors import StoreUnavailableError
from marketplace_orders.services.notifier import CourierNotifier, NotificationSettings
from marketplace_orders.config import settings

# Setup logging
setup_logging(
    service_name=settings.service_name,
    log_level=settings.log_level,
    log_format=settings.log_format
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info(f"Starting {settings.service_name}")
    logger.info(f"Environment: {settings.environment}")

    try:
        engine = init_database(settings.database_url)
        create_tables()
        logger.info("Database initialized successfully")

        if settings.otel_enabled:
            instrument_sqlalchemy(engine)

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    if settings.otel_enabled:
        setup_opentelemetry(
            service_name=settings.otel_service_name or settings.service_name,
            otlp_endpoint=settings.otel_endpoint,
            enabled=settings.otel_enabled
        )
        logger.info("OpenTelemetry initialized")

    # Change feed: captures committed order changes for the live queue and notifier
    feed = ChangeFeed()
    feed.attach(database.SessionLocal)
    routes.change_feed = feed

    notifier = CourierNotifier(
        NotificationSettings.from_settings(settings),
        database.SessionLocal
    )
    notifier.start(feed)
    app.state.notifier = notifier

    logger.info(f"{settings.service_name} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.service_name}")
    notifier.stop()
    feed.detach(database.SessionLocal)


# Create FastAPI app
app = FastAPI(
    title="Order Hub",
    description="Multi-shop parent orders, status aggregation and the courier live queue",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.otel_enabled:
    instrument_fastapi(app)

app.include_router(routes.router)


@app.get("/health")
async def health_check():
    """Health check endpoint (liveness probe)"""
    feed = routes.get_change_feed()
    notifier = getattr(app.state, "notifier", None)

    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "live_queue_subscribers": feed.subscriber_count if feed else 0,
        "notifications": notifier.get_stats() if notifier else {"enabled": False}
    }


@app.get("/ready")
async def readiness_check():
    """Readiness check endpoint (readiness probe)"""
    try:
        db = database.SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        return {
            "status": "ready",
            "service": settings.service_name,
            "database": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "service": settings.service_name,
                "database": "disconnected",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": settings.service_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
        "live_queue": "/api/v1/live-queue/ws"
    }


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    """The database could not be reached; not the same as an empty result"""
    logger.error(f"Store unavailable on {request.url.path}: {exc}")

    return JSONResponse(
        status_code=503,
        content={
            "detail": "Order store unavailable",
            "type": exc.__class__.__name__
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "type": exc.__class__.__name__
        }
    )


def run():
    """Console entry point"""
    import uvicorn

    uvicorn.run(
        "marketplace_orders.main:app",
        host="0.0.0.0",
        port=8003,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()

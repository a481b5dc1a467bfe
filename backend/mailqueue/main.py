"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mailqueue.api import email
from mailqueue.core.config import settings
from mailqueue.core.logging import setup_logging
from mailqueue.core.otel import initialize_otel, instrument
from mailqueue.core.security import log_api_access
from mailqueue.db.session import engine, init_db
from mailqueue.services.email_service import validate_email_config

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    is_valid, error = validate_email_config()
    if not is_valid:
        logger.error(f"❌ {error}")

    yield

    logger.info("Shutting down...")


app = FastAPI(
    title="Mail Queue",
    description="Transactional email queue with retry, monitoring and backup delivery",
    version="1.0.0",
    lifespan=lifespan
)

instrument(app, engine)

app.include_router(email.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Log every request with its status code"""
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        log_api_access(request, status_code, error)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}

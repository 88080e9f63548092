"""FastAPI application entry point"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings
from app.core.errors import OrderServiceError
from app.core.logging import setup_logging
from app.core.otel import initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy
from app.core.providers import close_providers, open_providers
from app.db.session import engine, init_db
from app.models import Base  # Import all models to register with Base.metadata

# Import routers
from app.api import checkout, orders, webhooks

setup_logging()

logger = logging.getLogger(__name__)
api_access_logger = logging.getLogger("api_access")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    open_providers(app)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await close_providers(app)
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title="Storefront Orders Backend",
    description="Checkout sessions, order ledger and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI and HTTPX with OpenTelemetry
instrument_fastapi(app)
instrument_httpx()

# CORS middleware
allowed_origins = list(settings.allowed_origins) or [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# Include routers
app.include_router(checkout.router)
app.include_router(webhooks.router)
app.include_router(orders.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Log method, path, status and latency for every request"""
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        api_access_logger.info(f"{request.method} {request.url.path} {status_code} {elapsed_ms:.1f}ms")


@app.exception_handler(OrderServiceError)
async def order_service_exception_handler(request: Request, exc: OrderServiceError):
    """Translate domain errors raised by services into HTTP responses"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
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

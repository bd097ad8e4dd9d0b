"""
FastAPI application main module.
Wires webhook ingress, the outbox dispatcher and scheduled reconciliation into
one process with request-id middleware, uniform error envelopes and health checks.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import os
from contextlib import asynccontextmanager
from ledgerlink.api.v1 import api_router
from ledgerlink.utils import setup_logging, get_logger
from ledgerlink.utils.observability import REQUEST_ID_HEADER, ensure_request_id, request_id_for
from ledgerlink.config import (
    ACTIVE_PAYMENT_PROVIDERS,
    CIRCUIT_BREAKER,
    ENABLE_WORKERS,
    LEDGER_SETTINGS,
    LOG_FILE,
    LOG_LEVEL,
    PROVIDER_API_KEYS,
    RECONCILIATION_SETTINGS,
    WEBHOOK_SECRETS,
    validate_provider_secrets,
)
from ledgerlink.database import Base, SessionLocal, engine
from ledgerlink.integrations.feeds import PaystackTransactionFeed, ProviderFeed, StripeChargeFeed
from ledgerlink.integrations.ledger import StellarLedgerClient
from ledgerlink.jobs.periodic import PeriodicWorker
from ledgerlink.jobs.workers import (
    outbox_worker,
    reconciliation_worker,
    webhook_purge_worker,
    webhook_retry_worker,
)
from ledgerlink.services.alerting import LoggingNotifier
from ledgerlink.services.dispatcher import LedgerAnchorHandler, OutboxDispatcher
from ledgerlink.services.webhook_ingress import WebhookIngress
from ledgerlink.utils.circuit_breaker import CircuitBreaker
from ledgerlink.utils.time import SystemClock

# Setup logging before creating the app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE, enable_console=True)

logger = get_logger(__name__)

SERVICE_NAME = "ledgerlink"
SERVICE_VERSION = "1.0.0"


def build_feeds() -> dict[str, ProviderFeed]:
    """Instantiate a transaction feed for every provider that has API credentials."""
    feeds: dict[str, ProviderFeed] = {}
    if PROVIDER_API_KEYS.get("stripe"):
        feeds["stripe"] = StripeChargeFeed()
    if PROVIDER_API_KEYS.get("paystack"):
        feeds["paystack"] = PaystackTransactionFeed()
    return feeds


def build_dispatcher(clock: SystemClock) -> OutboxDispatcher | None:
    """Outbox dispatcher for ledger anchoring, or None when no ledger account is configured."""
    if not LEDGER_SETTINGS.get("secret_key"):
        logger.warning("STELLAR_SECRET_KEY not set; ledger anchoring jobs will stay pending")
        return None
    ledger = StellarLedgerClient()
    breaker = CircuitBreaker(
        failure_threshold=int(CIRCUIT_BREAKER["failure_threshold"]),
        open_cooldown_seconds=float(CIRCUIT_BREAKER["open_cooldown_seconds"]),
        half_open_probe_count=int(CIRCUIT_BREAKER["half_open_probe_count"]),
        clock=clock,
    )
    return OutboxDispatcher(SessionLocal, [LedgerAnchorHandler(ledger)], clock=clock, breaker=breaker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Validates provider configuration, wires services onto ``app.state`` and
    runs the background workers for the lifetime of the process.
    """
    logger.info("Application startup initiated")

    workers: list[PeriodicWorker] = []
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        # A provider that cannot verify its own webhooks must stop the process.
        validate_provider_secrets(ACTIVE_PAYMENT_PROVIDERS, WEBHOOK_SECRETS)

        clock = SystemClock()
        notifier = LoggingNotifier()
        ingress = WebhookIngress(WEBHOOK_SECRETS, clock=clock)
        feeds = build_feeds()
        dispatcher = build_dispatcher(clock)

        app.state.clock = clock
        app.state.notifier = notifier
        app.state.webhook_ingress = ingress
        app.state.reconciliation_feeds = feeds
        app.state.dispatcher = dispatcher
        app.state.ledger = dispatcher.handlers["ledger.anchor"].ledger if dispatcher else None

        if ENABLE_WORKERS:
            if dispatcher is not None:
                workers.append(outbox_worker(dispatcher))
            workers.append(webhook_retry_worker(ingress, SessionLocal))
            workers.append(webhook_purge_worker(ingress, SessionLocal))
            if RECONCILIATION_SETTINGS["enable_scheduler"]:
                for feed in feeds.values():
                    workers.append(reconciliation_worker(feed, SessionLocal, clock=clock, notifier=notifier))
            for worker in workers:
                worker.start()
            logger.info("Background workers started", workers=[w.name for w in workers])
        else:
            logger.info("Background workers disabled; skipping startup")
        app.state.workers = workers

        logger.info(
            "Application startup completed successfully",
            providers=ACTIVE_PAYMENT_PROVIDERS,
            feeds=sorted(feeds),
            anchoring_enabled=dispatcher is not None,
        )
        yield
    except Exception as e:
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        for worker in workers:
            worker.stop()
        logger.info("Application shutdown completed")

# FastAPI app initialization with comprehensive configuration
app = FastAPI(
    title="LedgerLink Payments Consistency Service",
    description="""
    Eventual-consistency backbone for payment state.

    ## Features
    * **Payment webhooks** - Signature-verified, deduplicated ingestion for Stripe, Razorpay, Paystack, Flutterwave and PayPal
    * **Payment ledger** - Explicit state machine with idempotent transitions
    * **Transactional outbox** - Ledger anchoring with retries, backoff and a circuit breaker
    * **Reconciliation** - Resumable provider history scans with mismatch reports

    Webhook endpoints must receive the provider's raw request body; signatures
    are verified over the exact bytes sent.
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

# CORS middleware - configure appropriately for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Compression middleware for better performance
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Request ID and comprehensive logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        user_agent=request.headers.get("User-Agent"),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time

    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

# Custom exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = request_id_for(request)

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": request_id
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = request_id_for(request)

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = request_id_for(request)

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances which the JSON encoder rejects
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
def detailed_health_check():
    """Detailed health check with database status and background worker snapshots."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    try:
        from sqlalchemy import text
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    workers = getattr(app.state, "workers", None) or []
    health_status["checks"]["workers"] = [w.snapshot() for w in workers]
    if any(not w.running for w in workers):
        health_status["status"] = "degraded"

    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None and dispatcher.breaker is not None:
        health_status["checks"]["ledger_circuit"] = dispatcher.breaker.snapshot()

    return health_status

# API Documentation root
@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "LedgerLink Payments Consistency Service",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

# Include API router with version prefix
app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "ledgerlink.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["ledgerlink"],
        log_level="info",
        access_log=True
    )

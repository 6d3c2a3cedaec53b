"""
FastAPI application main module.
Hosts the reconciliation scheduler and the operations API (manual runs, metrics, audit queries).
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from order_reconciliation import config
from order_reconciliation.api.v1 import api_router
from order_reconciliation.config import ReconciliationSettings, load_settings
from order_reconciliation.database import SessionLocal, init_db
from order_reconciliation.exceptions import ConfigurationInvalid, LockUnavailable
from order_reconciliation.integrations.abacatepay import AbacatePayClient
from order_reconciliation.integrations.base import PaymentGateway
from order_reconciliation.jobs.reconciliation_cycle import build_cycle
from order_reconciliation.jobs.scheduler import ReconciliationScheduler
from order_reconciliation.utils import setup_logging, get_logger

# Setup logging before creating the app
setup_logging(
    log_level=config.LOG_LEVEL,
    log_file=config.LOG_FILE,
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "order-reconciliation"
SERVICE_VERSION = "1.0.0"


def create_app(
    *,
    settings: Optional[ReconciliationSettings] = None,
    session_factory: Optional[sessionmaker] = None,
    gateway: Optional[PaymentGateway] = None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    """Build the app. Every collaborator can be injected; defaults come from config."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.
        Validates configuration, creates tables, wires the cycle and (optionally) starts the scheduler.
        """
        logger.info("Application startup initiated")
        factory = session_factory or SessionLocal
        active_settings = settings or load_settings()
        owned_gateway = None
        if gateway is None:
            owned_gateway = AbacatePayClient.from_settings(active_settings)
        active_gateway = gateway or owned_gateway

        init_db(bind=factory.kw.get("bind"))
        logger.info("Database tables ready")

        cycle = build_cycle(active_settings, factory, active_gateway)
        scheduler = ReconciliationScheduler(cycle, active_settings)

        app.state.settings = active_settings
        app.state.session_factory = factory
        app.state.scheduler = scheduler
        app.state.audit = cycle.audit

        run_scheduler = config.SCHEDULER_ENABLED if start_scheduler is None else start_scheduler
        if run_scheduler:
            scheduler.start()
        else:
            logger.info("Scheduler disabled; cycles run only on manual trigger")

        logger.info(
            "Application startup completed successfully",
            environment=active_settings.environment,
            lock_backend=active_settings.lock_backend,
        )
        try:
            yield
        finally:
            logger.info("Application shutdown initiated")
            scheduler.shutdown()
            if owned_gateway is not None:
                await owned_gateway.close()
            logger.info("Application shutdown completed")

    app = FastAPI(
        title="Order Reconciliation",
        description="""
    Scheduled reconciliation of pending storefront orders against the AbacatePay PIX gateway.

    ## Operations
    * **Manual run** - trigger one cycle (409 while another cycle holds the lease)
    * **Metrics** - outcome counters for the last cycle and since startup
    * **Audit** - per-order outcomes and per-cycle runs, with retention purge

    ## Authentication
    When `ADMIN_API_KEY` is set, send it in the `X-Admin-Key` header.
    """,
        version=SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/api/v1/openapi.json",
        lifespan=lifespan,
    )

    # Request ID and request logging middleware
    @app.middleware("http")
    async def add_request_context_and_logging(request: Request, call_next):
        """
        Add request ID, timing, and request/response logging.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.start_time = time.time()

        logger.info(
            "Request started",
            method=request.method,
            url=str(request.url),
            remote_addr=request.client.host if request.client else "unknown",
            request_id=request_id
        )

        response = await call_next(request)

        process_time = time.time() - request.state.start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            process_time_ms=round(process_time * 1000, 2),
            request_id=request_id
        )
        return response

    @app.exception_handler(LockUnavailable)
    async def lock_unavailable_handler(request: Request, exc: LockUnavailable):
        """A cycle is already running; the caller should retry later."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.info("Manual run rejected, lease busy", holder_id=exc.holder_id, request_id=request_id)
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "message": str(exc),
                "holder_id": exc.holder_id,
                "request_id": request_id
            }
        )

    @app.exception_handler(ConfigurationInvalid)
    async def configuration_invalid_handler(request: Request, exc: ConfigurationInvalid):
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error("Configuration invalid", errors=exc.errors, request_id=request_id)
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "message": "Invalid configuration",
                "details": exc.errors,
                "request_id": request_id
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors."""
        request_id = getattr(request.state, "request_id", "unknown")

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
                "details": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ],
                "request_id": request_id
            }
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions."""
        request_id = getattr(request.state, "request_id", "unknown")

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
        request_id = getattr(request.state, "request_id", "unknown")

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

    @app.get("/health", tags=["health"], summary="Basic health check")
    async def health_check(request: Request):
        """Basic health check endpoint for load balancers."""
        settings_state = getattr(request.app.state, "settings", None)
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "timestamp": time.time(),
            "environment": settings_state.environment if settings_state else None,
            "lock_backend": settings_state.lock_backend if settings_state else None,
        }

    @app.get("/health/detailed", tags=["health"], summary="Detailed health check")
    async def detailed_health_check(request: Request):
        """Detailed health check with database, lock backend and scheduler status."""
        health_status = {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "timestamp": time.time(),
            "checks": {}
        }

        factory = getattr(request.app.state, "session_factory", None) or SessionLocal
        db = factory()
        try:
            db.execute(text("SELECT 1"))
            health_status["checks"]["database"] = "healthy"
        except Exception as e:
            health_status["checks"]["database"] = f"unhealthy: {str(e)}"
            health_status["status"] = "degraded"
        finally:
            db.close()

        scheduler = getattr(request.app.state, "scheduler", None)
        if scheduler is not None:
            try:
                lease = scheduler.cycle.lock_manager.current()
                health_status["checks"]["lock"] = {
                    "backend": scheduler.settings.lock_backend,
                    "held_by": lease.holder_id if lease else None,
                }
            except Exception as e:
                health_status["checks"]["lock"] = f"unhealthy: {str(e)}"
                health_status["status"] = "degraded"
            status_snapshot = scheduler.status()
            health_status["checks"]["scheduler"] = {
                k: v for k, v in status_snapshot.items() if k in {"scheduler_running", "cycle_running", "next_runs"}
            }

        return health_status

    @app.get("/", tags=["root"])
    async def root():
        """API root endpoint with basic information."""
        return {
            "message": "Order Reconciliation API",
            "version": SERVICE_VERSION,
            "documentation": "/docs",
            "health_check": "/health",
            "api_base": "/api/v1"
        }

    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "order_reconciliation.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["order_reconciliation"],
        log_level="info",
        access_log=True
    )

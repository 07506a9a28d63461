"""
Trusted Devices Proxy - FastAPI Application
Main application entry point
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from app.settings import get_settings
from app.database import engine, Base, SessionLocal
from app.exceptions import TrustError
from app.services import (
    DeviceGateway,
    DeviceHealthTable,
    GroupCapacityResolver,
    JobJournal,
    ReachabilityMonitor,
    TeardownOrchestrator,
    TrustReconciler,
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting Trusted Devices Proxy", version=settings.app_version)

    # Create journal tables
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")

    health = DeviceHealthTable()
    gateway = DeviceGateway.from_settings(settings, health)
    resolver = GroupCapacityResolver(gateway, settings.device_group_prefix, settings.max_devices_per_group)
    teardown = TeardownOrchestrator(gateway, settings.min_certificate_delete_version)
    reconciler = TrustReconciler(gateway, resolver, teardown, health, settings)
    journal = JobJournal(SessionLocal)
    monitor = ReachabilityMonitor(reconciler, gateway, teardown, health, settings, journal=journal)

    app.state.reconciler = reconciler
    app.state.journal = journal
    app.state.monitor = monitor

    if settings.monitor_enabled:
        monitor.start()

    yield

    # Shutdown
    logger.info("Shutting down Trusted Devices Proxy")
    await monitor.stop()
    await reconciler.wait_for_cleanup()
    await gateway.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Establishes, verifies and tears down trust between a control-plane proxy and managed devices",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# Health check endpoint
@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    monitor = getattr(request.app.state, "monitor", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "app": settings.app_name,
        "monitor_running": bool(monitor and monitor.running),
    }


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Trusted Devices Proxy API",
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health"
    }


# Exception handlers
@app.exception_handler(TrustError)
async def trust_exception_handler(request: Request, exc: TrustError):
    """Surface trust errors with their own status code"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "type": type(exc).__name__
        }
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies as 400 with per-field messages"""
    errors = []
    for error in exc.errors():
        loc_parts = [str(x) for x in error.get("loc", [])]
        if loc_parts and loc_parts[0] in ("body", "query", "path"):
            loc_parts = loc_parts[1:]
        errors.append({
            "field": ".".join(loc_parts) if loc_parts else "unknown",
            "message": error.get("msg", "Validation error"),
        })

    return JSONResponse(
        status_code=400,
        content={
            "detail": "Validation failed",
            "type": "ValidationError",
            "errors": errors,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(
        "Unhandled exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "type": type(exc).__name__
        }
    )


# Import and include routers
from app.routers import trusted_devices, jobs

app.include_router(trusted_devices.router, prefix="/mgmt/shared/TrustedDevices", tags=["Trusted Devices"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )

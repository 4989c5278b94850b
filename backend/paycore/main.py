"""
Payment Orchestration Core — FastAPI Application Entry Point

Aggregates all routers, configures logging and middleware, renders payment
errors and initializes the database on startup.
"""
import logging
import time

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paycore.adapters.registry import AdapterRegistry, get_registry
from paycore.config import get_settings
from paycore.database import get_db, init_db
from paycore.exceptions import PaymentError, ProviderAuthError, ValidationError
from paycore.logging_config import setup_logging
from paycore.routes import payment_router, stp_router, webhook_router
from paycore.schemas.schemas import HealthResponse

settings = get_settings()
setup_logging(settings)
logger = logging.getLogger("paycore.main")

# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Multi-provider payment orchestration: card and cash vouchers, wallet checkout, "
        "SPEI bank transfers and utility bill payments behind one canonical payment lifecycle."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

# ─── Startup ─────────────────────────────────────────────────────────
BOOT_TIME = time.time()


@app.on_event("startup")
def on_startup():
    """Initialize database tables and log boot info."""
    init_db()
    logger.info(
        "%s v%s started (database=%s, debug=%s)",
        settings.APP_NAME, settings.APP_VERSION, settings.DATABASE_URL, settings.DEBUG,
    )


@app.on_event("shutdown")
def on_shutdown():
    get_registry().close()


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every API request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/api"):
        logger.info("%s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration)

    return response


# ─── Error Rendering ─────────────────────────────────────────────────
@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if isinstance(exc, ProviderAuthError):
        logger.critical("Provider integration misconfigured (%s): %s", exc.provider, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    error = ValidationError("Invalid request", errors=errors)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(stp_router)


@app.get("/health", tags=["Health"], response_model=HealthResponse)
def deep_health(db: Session = Depends(get_db), registry: AdapterRegistry = Depends(get_registry)):
    """Detailed health check including dependency statuses."""
    db_ok = False
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as e:
        logger.error("Health check database probe failed: %s", e)

    return {
        "status": "healthy" if db_ok else "degraded",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "database": "connected" if db_ok else "disconnected",
        "providers": sorted(registry.provider_names),
    }

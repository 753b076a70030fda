# main.py — RankForge API
# Features:
# - Request correlation IDs
# - Security headers
# - Domain error → JSON mapping
# - WebSocket push channel
# - Health check with DB and cache verification
# - All routers registered

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import func, select, text

from database import init_db, close_db, get_db_context
from errors import ConfigurationError, GamificationError
from models import Rank
from notifier import NotificationPurpose, notify_safely
from services import GamificationServices, build_services, get_services
from telemetry import setup_telemetry

VERSION = "1.0.0"

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("rankforge")


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("⚠️  JWT_SECRET_KEY is not set or insecure — tokens will not survive a restart")

    if not os.getenv("REDIS_URL"):
        warnings.append("⚠️  REDIS_URL not set — leaderboard cache is per-process")

    if not os.getenv("MAIL_WEBHOOK_URL"):
        warnings.append("⚠️  MAIL_WEBHOOK_URL not set — verification and rank-up mails are only logged")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


async def _check_rank_table(session_factory) -> int:
    async with get_db_context(session_factory) as db:
        count = (await db.execute(select(func.count(Rank.id)))).scalar_one()
    if not count:
        logger.critical("Rank table is empty — registration and XP awards will fail until tiers exist")
    return count


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting RankForge v{VERSION}...")
    await init_db()
    from routers.websocket_router import manager
    services = build_services(push=manager)
    app.state.services = services
    _check_startup_config()
    await _check_rank_table(services.session_factory)
    # Initialise OpenTelemetry (no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set)
    setup_telemetry(app)
    yield
    logger.info("🛑 Shutting down RankForge...")
    await services.close()
    await close_db()


app = FastAPI(
    title="RankForge",
    description="XP, rank, tournament and leaderboard engine",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "Retry-After"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; connect-src 'self' wss: https:;"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(GamificationError)
async def gamification_exception_handler(request: Request, exc: GamificationError):
    request_id = getattr(request.state, "request_id", None)

    if isinstance(exc, ConfigurationError):
        logger.critical(f"Configuration error [{exc.code}] {exc.message} {exc.details} [rid={request_id}]")
        services = getattr(request.app.state, "services", None)
        if services is not None:
            await notify_safely(services.notifier, services.admin_email, NotificationPurpose.ANOMALY_ALERT,
                                f"Configuration error on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": exc.code, "request_id": request_id},
        )

    headers = {}
    retry_after = exc.details.get("retry_after")
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "request_id": request_id},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import (
    auth, players, ranks, tasks, tournaments, leaderboards, websocket_router,
)

app.include_router(auth.router)
app.include_router(players.router)
app.include_router(ranks.router)
app.include_router(tasks.router)
app.include_router(tournaments.router)
app.include_router(leaderboards.router)
app.include_router(websocket_router.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(services: GamificationServices = Depends(get_services)):
    """Health check with database and cache connectivity verification"""

    db_status = "unknown"
    try:
        async with services.session_factory() as db:
            await db.execute(text("SELECT 1"))
            db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    try:
        cache_status = "connected" if await services.cache.ping() else "unavailable"
    except Exception as e:
        cache_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "cache": cache_status,
    }


@app.get("/")
async def root():
    return {
        "name": "RankForge",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )

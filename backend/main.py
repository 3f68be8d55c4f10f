# main.py — Collabute API
# Features:
# - Request correlation IDs
# - Security headers
# - Domain errors rendered as JSON with the request id
# - Redis-backed job dispatcher, optional in-process workers
# - Chat WebSocket gateway fed by the real-time notification relay
# - Health check with DB and Redis verification

import os
import json
import uuid
import time
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from database import init_db, close_db, get_db_session
from exceptions import AppError
from jobs.connection import create_redis
from jobs.dispatcher import init_job_dispatcher, get_job_dispatcher
from jobs.relay import NotificationRelay
from jobs.worker import start_workers, stop_workers
from routers.chat_gateway import gateway
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("collabute")

VERSION = "1.0.0"
JOB_WORKERS_ENABLED = os.getenv("JOB_WORKERS_ENABLED", "false").lower() == "true"


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("⚠️  JWT_SECRET_KEY is not set or too short — tokens will not survive a restart")

    if not os.getenv("RESEND_API_KEY"):
        warnings.append("⚠️  RESEND_API_KEY not configured — email jobs will complete without sending")

    if JOB_WORKERS_ENABLED:
        logger.info("⚙️  In-process job workers enabled")
    else:
        logger.info("⚙️  In-process job workers disabled — run collabute-worker to consume queues")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Collabute API v{VERSION}...")
    await init_db()
    _check_startup_config()

    redis = create_redis()
    dispatcher = init_job_dispatcher(redis)
    gateway.dispatcher = dispatcher
    relay = NotificationRelay(redis)
    stopping = asyncio.Event()
    relay_task = asyncio.create_task(relay.run(gateway.notify_user, stopping))
    workers = start_workers(dispatcher, relay) if JOB_WORKERS_ENABLED else []

    # Initialise OpenTelemetry (no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set)
    setup_telemetry(app)
    yield
    logger.info("🛑 Shutting down Collabute API...")
    stopping.set()
    await stop_workers(workers)
    await asyncio.gather(relay_task, return_exceptions=True)
    gateway.dispatcher = None
    await redis.aclose()
    await close_db()


app = FastAPI(
    title="Collabute",
    description="Project collaboration backend: real-time chat, GitHub sync and background jobs",
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
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
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
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message} [rid={(request_id or '')[:8]}]")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "request_id": request_id},
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

from routers import auth, chat, chat_gateway, issues, notifications, projects
from routers import jobs as jobs_router

app.include_router(auth.router)
app.include_router(chat.router)
app.include_router(chat_gateway.router)
app.include_router(jobs_router.router)
app.include_router(projects.router)
app.include_router(issues.router)
app.include_router(notifications.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database and queue backend verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    redis_status = "unknown"
    try:
        await get_job_dispatcher().redis.ping()
        redis_status = "connected"
    except Exception as e:
        redis_status = f"error: {str(e)[:100]}"

    healthy = db_status == "connected" and redis_status == "connected"
    return {
        "status": "healthy" if healthy else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "redis": redis_status,
        "websocket": gateway.registry.get_stats(),
    }


@app.get("/")
async def root():
    return {
        "name": "Collabute",
        "version": VERSION,
        "description": "Project collaboration backend",
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
    )

"""FastAPI application entry point."""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from stockroom import __version__
from stockroom.api.routes import api_router
from stockroom.core.config import settings
from stockroom.core.log_config import configure_logging, request_id_var
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import get_token_from_request
from stockroom.core.security import decode_access_token
from stockroom.db.base import Base
from stockroom.db.session import SessionLocal, engine
from stockroom.services.errors import InventoryError

import stockroom.models  # noqa: F401  registers every table on Base.metadata

# Public paths that do NOT require authentication
# All other /api/v1/* paths require a valid Bearer token or access_token cookie
PUBLIC_PATH_PREFIXES = [
    "/docs",
    "/redoc",
    "/openapi.json",
    f"{settings.api_v1_prefix}/auth/login",
]

PUBLIC_EXACT_PATHS = [
    "/",
    "/health",
    "/health/ready",
]

configure_logging(settings.log_level, settings.debug)
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class HTTPSRedirectMiddleware(BaseHTTPMiddleware):
    """Redirect HTTP to HTTPS in production (behind reverse proxy)."""

    async def dispatch(self, request: Request, call_next):
        if not settings.debug and request.headers.get("x-forwarded-proto") == "http":
            url = request.url.replace(scheme="https")
            return RedirectResponse(url=str(url), status_code=301)
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none';"
        return response


class AuthEnforcementMiddleware(BaseHTTPMiddleware):
    """Global authentication enforcement middleware.

    Every API path requires a valid token unless it is listed in
    PUBLIC_PATH_PREFIXES or PUBLIC_EXACT_PATHS. Route dependencies still
    re-check the user and their permissions.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Always allow OPTIONS (CORS preflight)
        if request.method == "OPTIONS" or path in PUBLIC_EXACT_PATHS:
            return await call_next(request)
        for prefix in PUBLIC_PATH_PREFIXES:
            if path.startswith(prefix):
                return await call_next(request)

        if path.startswith(f"{settings.api_v1_prefix}/"):
            token = get_token_from_request(request)
            payload = decode_access_token(token) if token else None
            if payload is None or not all(payload.get(k) for k in ("sub", "email", "role")):
                return JSONResponse(
                    status_code=401,
                    content={"detail": "Authentication required"},
                    headers={"WWW-Authenticate": "Bearer"},
                )

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ``X-Request-ID`` and log its outcome and timing.

    A caller-supplied ``X-Request-ID`` is kept so IDs can be followed
    across services; otherwise a new one is generated.
    """

    QUIET_PATHS = ("/health", "/health/ready", "/", "/docs", "/openapi.json")

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        quiet = request.url.path in self.QUIET_PATHS
        started = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        try:
            if not quiet:
                request_logger.info(f"{request.method} {request.url.path} from {client_ip}")
            try:
                response = await call_next(request)
            except Exception:
                elapsed = time.perf_counter() - started
                request_logger.exception(f"{request.method} {request.url.path} failed after {elapsed:.3f}s")
                raise

            elapsed = time.perf_counter() - started
            if not quiet:
                request_logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    f"{request.method} {request.url.path} -> {response.status_code} in {elapsed:.3f}s",
                )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Stockroom inventory API")

    # Create tables if they don't exist (for SQLite dev)
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    yield

    logger.info("Shutting down Stockroom inventory API")


app = FastAPI(
    title="Stockroom",
    description="Warehouse and inventory management API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(InventoryError)
async def inventory_error_handler(request: Request, exc: InventoryError):
    """Map domain errors to their HTTP status with a ``detail`` message."""
    if exc.status_code >= 403:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# HTTPS redirect middleware (production only)
if not settings.debug:
    app.add_middleware(HTTPSRedirectMiddleware)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(AuthEnforcementMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - added last so it runs first and decorates 401s too
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=600,
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get("/health/ready")
def readiness_check():
    """Readiness check with database and Redis connectivity check."""
    checks = {"database": "unknown", "redis": "unknown"}

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    if settings.redis_url:
        import redis

        try:
            redis.from_url(settings.redis_url, socket_connect_timeout=2).ping()
            checks["redis"] = "healthy"
        except redis.exceptions.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            checks["redis"] = "unhealthy"
    else:
        checks["redis"] = "not configured"

    all_healthy = all(c in ("healthy", "not configured") for c in checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "Stockroom inventory API",
        "docs": "/docs",
        "health": "/health",
    }

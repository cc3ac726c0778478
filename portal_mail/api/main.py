"""
FastAPI app for the Portal Mail engines

Mailbox sync, outbound delivery with retries and scheduled sends, and
open tracking.
"""
from fastapi import FastAPI, Request as FastAPIRequest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import logging
import uuid

from portal_mail.api.dependencies import get_mail_jobs
from portal_mail.api.routes import send, sync, threads, tracking
from portal_mail.core.config import get_settings, setup_logging
from portal_mail.core.database import init_db
from portal_mail.core.errors import sanitize_error_message
from portal_mail.core.jobs import BackgroundJobs

settings = get_settings()
logger = logging.getLogger(__name__)
error_logger = logging.getLogger("api.errors")

API_VERSION = "1.0.0"


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response


# Create FastAPI app
app = FastAPI(
    title="Portal Mail API",
    description="Mailbox sync and outbound delivery for connected Gmail accounts",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

background_jobs = None


# Global exception handler for safe error messages
@app.exception_handler(Exception)
async def global_exception_handler(request: FastAPIRequest, exc: Exception):
    """
    Log the sanitized error with an error id and return a generic message.
    """
    error_id = str(uuid.uuid4())
    sanitized_message = sanitize_error_message(str(exc))

    error_logger.error(
        f"Error {error_id}: {type(exc).__name__}: {sanitized_message}",
        exc_info=True,
        extra={
            "error_id": error_id,
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else None
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred",
            "error_id": error_id,
            "message": "The error has been logged. If you need assistance, reference this error ID."
        }
    )


@app.on_event("startup")
async def startup_event():
    """Configure logging, connect the database and start the periodic jobs"""
    global background_jobs
    setup_logging(settings)

    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {sanitize_error_message(str(e))}")
        # Continue anyway - / and /health still answer
        return

    if settings.background_jobs_enabled:
        background_jobs = BackgroundJobs(get_mail_jobs(), settings)
        background_jobs.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the periodic jobs"""
    if background_jobs is not None:
        await background_jobs.stop()


# Security headers middleware (add first - outermost)
app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key"],
    max_age=3600,  # Cache preflight requests for 1 hour
)

# Include routers
app.include_router(sync.router)
app.include_router(send.router)
app.include_router(threads.router)
app.include_router(tracking.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": "Portal Mail API",
        "version": API_VERSION,
        "status": "running",
        "features": [
            "Gmail mailbox sync (full and incremental)",
            "Outbound delivery with bounce classification",
            "Automatic retries with backoff",
            "Durable scheduled sends",
            "Open tracking",
        ]
    }


@app.get("/health")
async def health_check():
    """Health check endpoint (no auth required)"""
    from sqlalchemy import text
    from portal_mail.core.database import get_session_factory

    health = {
        "status": "healthy",
        "version": API_VERSION,
        "database": "unknown",
        "background_jobs": bool(background_jobs and background_jobs.running),
        "checks": {}
    }

    try:
        db = get_session_factory()()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health["database"] = "connected"
        health["checks"]["database"] = "ok"
    except Exception as e:
        health["database"] = "disconnected"
        health["checks"]["database"] = f"error: {sanitize_error_message(str(e))}"
        health["status"] = "degraded"  # Still running, but with issues

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)

"""
AdInsights Connections - FastAPI Backend
Main application entry point with health checks and OAuth connection routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import missing_provider_credentials, settings, validate_security_settings
from routers import health, oauth
from routers.envelope import envelope, error_response
from services.connectors import build_provider_registry
from services.errors import OAuthError
from services.session_store import build_session_store


logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting AdInsights Connections API...")
    validate_security_settings()
    missing = missing_provider_credentials()
    if missing:
        print(f"⚠️ OAuth providers not fully configured: {', '.join(missing)}")
    yield
    # Shutdown
    await app.state.session_store.close()
    print("👋 Shutting down API...")


app = FastAPI(
    title="AdInsights Connections API",
    description="Connect Facebook, Instagram, Twitter and Amazon accounts via OAuth",
    version="0.1.0",
    lifespan=lifespan,
)

# Built once per process; tests swap in a MockTransport registry and an in-memory session store.
app.state.providers = build_provider_registry()
app.state.session_store = build_session_store()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    if exc.status_code >= 500:
        logger.error("Request failed path=%s error=%s", request.url.path, exc.message)
    return error_response(exc)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(False, error=str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(oauth.router, prefix="/api/auth/oauth", tags=["OAuth"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "AdInsights Connections API",
        "version": "0.1.0",
        "status": "running"
    }

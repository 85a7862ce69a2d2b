from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from mapbackend.config.settings import Settings, get_settings
from mapbackend.logging_utils import (
    RequestLoggingMiddleware,
    log_security_event,
    setup_logging,
)
from mapbackend.models.messages import HealthResponse
from mapbackend.proxy.endpoint import ProxyEndpoint
from mapbackend.proxy.errors import ProxyError
from mapbackend.proxy.translator import QueryTranslator
from mapbackend.routers import admin as admin_router
from mapbackend.routers import app_control as app_control_router
from mapbackend.routers import auth as auth_router
from mapbackend.routers import supabase_proxy as supabase_proxy_router
from mapbackend.routers import users as users_router
from mapbackend.security.auth import TokenService
from mapbackend.security.headers import SecurityHeadersMiddleware, apply_security_headers
from mapbackend.security.rate_limit import FixedWindowRateLimiter, limiter_from_settings
from mapbackend.services.app_control import AppStatusService, MaintenanceGateMiddleware
from mapbackend.services.supabase_service import SupabaseClients
from mapbackend.services.user_admin import UserAdminService

logger = logging.getLogger("api")

_STARTED = time.monotonic()


def _structured_error(
    status_code: int, message: str, code: str, headers: Optional[dict] = None
) -> JSONResponse:
    return JSONResponse(
        {"data": None, "error": {"message": message, "code": code}},
        status_code=status_code,
        headers=headers,
    )


async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    details = {"message": exc.message, "code": exc.code, **exc.log_details}
    log_security_event(exc.event, details, request)
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=exc.headers or None)


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    log_security_event("MALFORMED_REQUEST", {"errors": exc.errors()[:5]}, request)
    return _structured_error(400, "Malformed request", "MALFORMED_REQUEST")


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # traceback stays server side
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    log_security_event("UNEXPECTED_FAILURE", {"error": exc.__class__.__name__}, request)
    response = _structured_error(500, "Internal server error", "INTERNAL_ERROR")
    # runs outside the middleware stack
    apply_security_headers(response.headers)
    cid = getattr(request.state, "correlation_id", None)
    if cid:
        response.headers["X-Correlation-ID"] = cid
    return response


def create_app(
    settings: Optional[Settings] = None,
    clients: Optional[SupabaseClients] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
    app_status: Optional[AppStatusService] = None,
) -> FastAPI:
    """
    Build the API. Missing configuration fails here, before the first request.
    Tests inject fake store clients, a limiter with a fake clock, etc.
    """
    settings = (settings or get_settings()).require_complete()
    setup_logging(json_logs=settings.log_json)

    clients = clients or SupabaseClients.from_settings(settings)
    tokens = TokenService(settings.jwt_secret, settings.jwt_expires_hours)
    rate_limiter = rate_limiter or limiter_from_settings(settings)
    app_status = app_status or AppStatusService(
        clients, cache_seconds=settings.app_status_cache_seconds
    )

    app = FastAPI(title="Map Backend API", version=settings.version)
    app.state.settings = settings
    app.state.clients = clients
    app.state.tokens = tokens
    app.state.rate_limiter = rate_limiter
    app.state.app_status = app_status
    app.state.user_admin = UserAdminService(clients)
    app.state.proxy = ProxyEndpoint(
        rate_limiter=rate_limiter,
        tokens=tokens,
        translator=QueryTranslator(clients),
        trust_proxy=settings.trust_proxy_headers,
    )

    # last added runs first: logging -> security headers -> CORS -> maintenance gate
    if settings.app_control_enabled:
        app.add_middleware(MaintenanceGateMiddleware, service=app_status)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials="*" not in settings.cors_allow_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware, log_requests=settings.log_requests)

    app.add_exception_handler(ProxyError, _proxy_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)

    app.include_router(supabase_proxy_router.router)
    app.include_router(auth_router.router)
    app.include_router(app_control_router.router)
    app.include_router(users_router.router)
    app.include_router(admin_router.router)

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        return "ok"

    @app.get("/api/health", response_model=HealthResponse)
    def api_health() -> HealthResponse:
        return HealthResponse(
            timestamp=datetime.now(timezone.utc).isoformat(),
            uptime=round(time.monotonic() - _STARTED, 3),
        )

    return app


def __getattr__(name: str):
    # `uvicorn mapbackend.api:app` builds the app on first access, so importing
    # this module (tests, tools) never needs the environment.
    if name == "app":
        app = create_app()
        globals()["app"] = app
        return app
    raise AttributeError(name)

# mapbackend/services/app_control.py
"""
Application on/off switch.

The newest row of ``app_is_active`` decides whether the API serves traffic.
Reads are cached briefly; when the store cannot be reached we keep serving a
recent cached value and otherwise report the app as active.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from postgrest.exceptions import APIError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from mapbackend.models.messages import AppStatus
from mapbackend.proxy.descriptor import free_text
from mapbackend.proxy.errors import StoreOperationFailed, Unauthorized
from mapbackend.security.auth import Role

logger = logging.getLogger("app.control")

APP_STATUS_TABLE = "app_is_active"
STALE_GRACE_SECONDS = 60.0
MAX_REASON_LENGTH = 500

# reachable while the app is switched off
GATE_EXEMPT_PATHS = frozenset({"/api/app-control", "/api/app-status-stream", "/api/health"})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AppStatusService:
    def __init__(self, clients, cache_seconds: float = 10.0, clock: Callable[[], float] = time.time):
        self.clients = clients
        self.cache_seconds = cache_seconds
        self.clock = clock
        self._cached: Optional[AppStatus] = None
        self._checked_at = 0.0
        self._lock = threading.Lock()

    def clear_cache(self) -> None:
        with self._lock:
            self._checked_at = 0.0

    async def current(self) -> AppStatus:
        now = self.clock()
        with self._lock:
            if self._cached is not None and now - self._checked_at < self.cache_seconds:
                return self._cached

        try:
            status = await asyncio.to_thread(self._fetch)
        except Exception as e:
            logger.warning("app status check failed: %s", e)
            with self._lock:
                if self._cached is not None and now - self._checked_at < STALE_GRACE_SECONDS:
                    return self._cached
            return AppStatus(isActive=True, reason="Status check failed - defaulting to active")

        with self._lock:
            self._cached = status
            self._checked_at = now
        return status

    def _fetch(self) -> AppStatus:
        res = (
            self.clients.elevated.table(APP_STATUS_TABLE)
            .select("active, reason, updated_at, updated_by")
            .order("updated_at", desc=True)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        if not rows:
            return AppStatus(isActive=True, reason="No status recorded - defaulting to active")
        row = rows[0]
        return AppStatus(
            isActive=bool(row.get("active", True)),
            reason=row.get("reason"),
            updatedAt=row.get("updated_at"),
            updatedBy=row.get("updated_by"),
        )

    async def update(self, active: bool, reason: Optional[str], username: str) -> AppStatus:
        """Persist a new switch position; the caller must be an admin in the users table."""
        text = free_text(reason[:MAX_REASON_LENGTH], "reason") if reason else ""
        if not text:
            text = f"Status changed to {'active' if active else 'inactive'} by {username}"
        status = AppStatus(
            isActive=active, reason=text, updatedAt=utc_now_iso(), updatedBy=username
        )
        try:
            await asyncio.to_thread(self._write, status)
        except APIError as e:
            logger.warning("app status update failed: %s", e.message)
            raise StoreOperationFailed(
                f"Failed to update app status: {e.message}", code=str(e.code) if e.code else None
            )
        self.clear_cache()
        logger.info(
            "app.status",
            extra={"event": {"action": "update", "active": active, "updated_by": username}},
        )
        return status

    def _write(self, status: AppStatus) -> None:
        client = self.clients.elevated
        # re-check the role in the store; a still-valid credential may outlive a demotion
        users = (
            client.table("users").select("role").eq("username", status.updatedBy).limit(1).execute()
        )
        rows = users.data or []
        if not rows or rows[0].get("role") != Role.ADMIN.value:
            raise Unauthorized(
                "Access denied: only admins can change app status",
                log_details={"user": status.updatedBy},
            )

        row = {
            "active": status.isActive,
            "reason": status.reason,
            "updated_by": status.updatedBy,
            "updated_at": status.updatedAt,
        }
        latest = (
            client.table(APP_STATUS_TABLE)
            .select("id")
            .order("updated_at", desc=True)
            .limit(1)
            .execute()
        )
        if latest.data:
            client.table(APP_STATUS_TABLE).update(row).eq("id", latest.data[0]["id"]).execute()
        else:
            client.table(APP_STATUS_TABLE).insert(row).execute()


class MaintenanceGateMiddleware(BaseHTTPMiddleware):
    """503 for /api/* while the app is switched off (control, stream and health stay open)."""

    def __init__(self, app, service: AppStatusService):
        super().__init__(app)
        self.service = service

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith("/api/") or path in GATE_EXEMPT_PATHS:
            return await call_next(request)

        status = await self.service.current()
        if status.isActive:
            return await call_next(request)

        return JSONResponse(
            {
                "error": "Application is currently inactive",
                "reason": status.reason or "Maintenance mode active",
                "code": "APP_INACTIVE",
                "timestamp": utc_now_iso(),
            },
            status_code=503,
            headers={"Retry-After": "300", "X-App-Status": "inactive"},
        )


def sse_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def status_events(
    service: AppStatusService,
    interval: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """Server-sent event frames: a greeting, then the status every `interval` seconds."""
    yield sse_frame(
        {
            "type": "connection_established",
            "message": "App status stream connected",
            "timestamp": utc_now_iso(),
        }
    )
    while not await is_disconnected():
        try:
            status = await service.current()
            frame = {
                "type": "app_status_update",
                "status": status.model_dump(),
                "timestamp": utc_now_iso(),
            }
        except Exception as e:
            logger.warning("app status stream check failed: %s", e)
            frame = {
                "type": "connection_error",
                "message": "Status check failed",
                "timestamp": utc_now_iso(),
            }
        yield sse_frame(frame)
        await asyncio.sleep(interval)

from __future__ import annotations

import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Per-request correlation ID
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="-")

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"

security_logger = logging.getLogger("security")


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # provide %(correlation_id)s to all formatters
        record.correlation_id = correlation_id_ctx.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; an ``event`` dict passed via ``extra`` is merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        evt = getattr(record, "event", None)
        if isinstance(evt, dict):
            payload.update(evt)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


_CONFIGURED = False


def setup_logging(level: Optional[int] = None, json_logs: bool = False) -> None:
    """
    Idempotent logging setup that ensures %(correlation_id)s is available in all log lines.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    filt = CorrelationIdFilter()
    root = logging.getLogger()
    root.addFilter(filt)

    if not root.handlers:
        root.addHandler(logging.StreamHandler())
        root.setLevel(level or logging.INFO)

    formatter: logging.Formatter = (
        JsonFormatter() if json_logs else logging.Formatter(_TEXT_FORMAT)
    )
    for h in root.handlers:
        h.setFormatter(formatter)
        h.addFilter(filt)

    # Common FastAPI/Uvicorn loggers
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).addFilter(filt)

    _CONFIGURED = True


def client_address(request: Request) -> str:
    return request.client.host if request.client else "-"


def log_security_event(
    event: str, details: Optional[Dict[str, Any]], request: Optional[Request] = None
) -> None:
    """Structured security event on the ``security`` logger."""
    payload: Dict[str, Any] = {
        "security_event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details or {},
    }
    if request is not None:
        payload["client_key"] = getattr(request.state, "client_key", None) or client_address(request)
        payload["user_agent"] = request.headers.get("user-agent", "unknown")
        payload["path"] = request.url.path
        payload["method"] = request.method
    security_logger.warning("[SECURITY] %s", event, extra={"event": payload})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    - Generates UUID correlation ID per request (also in request.state.correlation_id)
    - Logs start/end/errors (start/end gated by log_requests)
    - Adds X-Correlation-ID response header
    """

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self._logger = logging.getLogger("request")
        self._log_requests = log_requests

    async def dispatch(self, request: Request, call_next):
        cid = uuid.uuid4().hex
        token = correlation_id_ctx.set(cid)
        request.state.correlation_id = cid

        method = request.method
        path = request.url.path
        start = time.perf_counter()

        if self._log_requests:
            self._logger.info(">> %s %s client=%s", method, path, client_address(request))

        try:
            response: Response = await call_next(request)
            dur_ms = int((time.perf_counter() - start) * 1000)
            response.headers["X-Correlation-ID"] = cid
            if self._log_requests:
                self._logger.info(
                    "<< %s %s %d %dms", method, path, response.status_code, dur_ms
                )
            return response
        except Exception as e:
            dur_ms = int((time.perf_counter() - start) * 1000)
            # Always log exceptions
            self._logger.exception(
                "!! %s %s error after %dms: %s", method, path, dur_ms, e
            )
            raise
        finally:
            correlation_id_ctx.reset(token)

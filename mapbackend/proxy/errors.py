# mapbackend/proxy/errors.py
"""
Classified proxy failures.

Each class knows its HTTP status, a stable machine code and the name of the
security-log event emitted when it is raised. The FastAPI handlers in
``mapbackend.api`` turn them into ``{"data": null, "error": {...}}`` bodies.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ProxyError(Exception):
    status_code = 500
    code = "PROXY_ERROR"
    event = "PROXY_ERROR"
    default_message = "Proxy request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Any = None,
        hint: Optional[str] = None,
        code: Optional[str] = None,
        event: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        log_details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.details = details
        self.hint = hint
        if code:
            self.code = code
        if event:
            self.event = event
        self.headers = dict(headers or {})
        # extra context for the security log only, never sent to the client
        self.log_details = dict(log_details or {})

    def to_error(self) -> Dict[str, Any]:
        err: Dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details is not None:
            err["details"] = self.details
        if self.hint is not None:
            err["hint"] = self.hint
        return err

    def to_body(self) -> Dict[str, Any]:
        return {"data": None, "error": self.to_error()}


class RateLimitExceeded(ProxyError):
    status_code = 429
    code = "RATE_LIMITED"
    event = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests"


class MalformedRequest(ProxyError):
    status_code = 400
    code = "MALFORMED_REQUEST"
    event = "MALFORMED_REQUEST"
    default_message = "Malformed request"


class InvalidTable(ProxyError):
    status_code = 400
    code = "INVALID_TABLE"
    event = "INVALID_TABLE_ACCESS"
    default_message = "Invalid table name"


class MaliciousInput(ProxyError):
    status_code = 400
    code = "MALICIOUS_INPUT"
    event = "MALICIOUS_INPUT_BLOCKED"
    default_message = "Potentially malicious input detected"


class MaliciousIdentifier(ProxyError):
    status_code = 400
    code = "MALICIOUS_SQL"
    event = "SQL_INJECTION_BLOCKED"
    default_message = "Potentially malicious SQL input detected"


class Unauthenticated(ProxyError):
    status_code = 401
    code = "UNAUTHENTICATED"
    event = "UNAUTHORIZED_ACCESS"
    default_message = "Authentication required"


class Unauthorized(ProxyError):
    status_code = 403
    code = "FORBIDDEN"
    event = "INSUFFICIENT_PERMISSIONS"
    default_message = "Insufficient permissions"


class UnsupportedMethod(ProxyError):
    status_code = 400
    code = "UNSUPPORTED_METHOD"
    event = "INVALID_METHOD"
    default_message = "Invalid method"


class StoreOperationFailed(ProxyError):
    status_code = 400
    code = "STORE_ERROR"
    event = "STORE_OPERATION_FAILED"
    default_message = "Database operation failed"


class UnexpectedFailure(ProxyError):
    status_code = 500
    code = "INTERNAL_ERROR"
    event = "UNEXPECTED_FAILURE"
    default_message = "Internal server error"


class NotFound(ProxyError):
    status_code = 404
    code = "NOT_FOUND"
    event = "RESOURCE_NOT_FOUND"
    default_message = "Not found"


class Conflict(ProxyError):
    status_code = 409
    code = "CONFLICT"
    event = "RESOURCE_CONFLICT"
    default_message = "Resource already exists"

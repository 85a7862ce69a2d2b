# mapbackend/security/headers.py
from __future__ import annotations

from typing import Dict, MutableMapping

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' 'unsafe-eval' *.yandex.com *.yandex.net"
        " *.yandex.ru *.yandex.com.tr api-maps.yandex.ru yastatic.net *.yastatic.net",
        "style-src 'self' 'unsafe-inline' *.yandex.com *.yandex.net",
        "img-src 'self' data: blob: *.yandex.com *.yandex.net *.yandex.ru",
        "connect-src 'self' *.supabase.co *.yandex.com *.yandex.net *.yandex.ru"
        " *.yandex.com.tr api-maps.yandex.ru",
        "frame-src 'none'",
        "object-src 'none'",
    ]
)

SECURITY_HEADERS: Dict[str, str] = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
}


def apply_security_headers(headers: MutableMapping[str, str]) -> None:
    for name, value in SECURITY_HEADERS.items():
        headers.setdefault(name, value)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Stamp the fixed browser-hardening headers on every response. Responses
    built by the catch-all 500 handler bypass this layer and call
    ``apply_security_headers`` themselves.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        apply_security_headers(response.headers)
        return response

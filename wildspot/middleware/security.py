from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
import logging
from wildspot.config import settings

logger = logging.getLogger(__name__)

DOC_PATHS = {"/docs", "/redoc", "/openapi.json", "/docs/oauth2-redirect"}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers on every response; relaxed CSP for the docs pages."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["X-Permitted-Cross-Domain-Policies"] = "none"
        # Image routes pick their own caching policy
        if "cache-control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"

        if not settings.DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if request.url.path in DOC_PATHS:
            # Swagger/Redoc load assets from jsdelivr
            csp = (
                "default-src 'self'; "
                "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
                "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
                "img-src 'self' data: https:; "
                "frame-ancestors 'none'"
            )
        else:
            csp = "default-src 'none'; img-src 'self'; frame-ancestors 'none'"

        response.headers["Content-Security-Policy"] = csp
        return response

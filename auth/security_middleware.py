"""
HTTP middleware for the ABAC service:
- Security headers on every response
- Request/response audit logging with the calling user
"""

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import logging

from auth.rbac_dependencies import verify_token

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses.

    The API serves JSON only, so the content policy forbids everything.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        return response


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with the user it was made by.
    Policy and attribute changes show up here next to the evaluation audit trail.
    """

    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else "unknown"
        started = time.perf_counter()

        # Extract user from token if present
        auth_header = request.headers.get("authorization")
        user_id = None

        if auth_header and "Bearer " in auth_header:
            config = request.app.state.abac.config
            token = auth_header.replace("Bearer ", "").strip()
            payload = verify_token(token, config.jwt_secret_key, config.jwt_algorithm)
            user_id = payload.get("sub") if payload else None

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        level = logging.WARNING if response.status_code in (401, 403) else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} | "
            f"User: {user_id} | IP: {client_ip} | {elapsed_ms:.1f}ms"
        )

        return response

"""Admin API authentication middleware.

All /api/* requests must carry ``Authorization: Bearer <DAVGATE_ADMIN_TOKEN>``.
The DAV gate (/dav) authenticates its own callers and health checks stay open.
"""

import hmac
import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from davgate.core.config import settings

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/api"


def token_matches(presented: str, expected: str) -> bool:
    """Constant-time token comparison; an empty expected token never matches."""
    if not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


class AdminAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to authenticate admin API requests with a bearer token."""

    def __init__(self, app: ASGIApp, admin_token: str | None = None):
        super().__init__(app)
        self._admin_token = admin_token

    @property
    def admin_token(self) -> str:
        return settings.admin_token if self._admin_token is None else self._admin_token

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # CORS preflight is answered by CORSMiddleware
        if request.method == "OPTIONS":
            return await call_next(request)

        # Segment-boundary match so /apis or /api-docs are not treated as /api
        if path != PROTECTED_PREFIX and not path.startswith(PROTECTED_PREFIX + "/"):
            return await call_next(request)

        if not self.admin_token:
            logger.warning(f"Admin API disabled, refusing {request.method} {path}")
            return JSONResponse(
                status_code=503,
                content={"detail": "Admin API is disabled. Set DAVGATE_ADMIN_TOKEN to enable it."},
            )

        token = self._extract_token(request)
        if not token:
            logger.warning(f"Admin API request without token: {request.method} {path}")
            return JSONResponse(
                status_code=401,
                content={
                    "detail": "Authentication required. Include the admin token in Authorization: Bearer <token> header."
                },
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not token_matches(token, self.admin_token):
            logger.warning(f"Invalid admin token for: {request.method} {path}")
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid admin token"},
                headers={"WWW-Authenticate": "Bearer"},
            )

        return await call_next(request)

    def _extract_token(self, request: Request) -> str | None:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            return auth_header[7:]
        return None

"""Middleware module for davgate."""

from davgate.middleware.admin_auth import AdminAuthMiddleware

__all__ = [
    "AdminAuthMiddleware",
]

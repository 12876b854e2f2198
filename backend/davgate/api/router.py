"""davgate API Router - aggregates the admin API routes."""

from fastapi import APIRouter

from davgate.api import blocks, principals, sessions

# Admin API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

api_router.include_router(blocks.router)
api_router.include_router(sessions.router)
api_router.include_router(principals.router)

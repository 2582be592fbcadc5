"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from quire.api.routes.books import router as books_router
from quire.api.routes.chapters import router as chapters_router
from quire.api.routes.health import router as health_router
from quire.api.routes.publish import router as publish_router


def create_api_router() -> APIRouter:
    """Create and configure the API router."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(books_router, tags=["books"])
    api_router.include_router(chapters_router, tags=["chapters"])
    api_router.include_router(publish_router, tags=["publish"])
    return api_router


__all__ = ["create_api_router"]

"""API routes."""

from .admin import router as admin_router
from .agencies import router as agencies_router
from .jobs import router as jobs_router
from .webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "agencies_router",
    "jobs_router",
    "webhooks_router",
]

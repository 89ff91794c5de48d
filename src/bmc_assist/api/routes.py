"""Main API routes for BMC Assist."""

from fastapi import APIRouter

from .chat import router as chat_router
from .usage import router as usage_router

# Main API router
router = APIRouter()

# Include sub-routers
router.include_router(chat_router, tags=["assistant"])
router.include_router(usage_router, tags=["usage"])

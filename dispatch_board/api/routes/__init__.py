"""
API routes module.
"""

from fastapi import APIRouter

from dispatch_board.api.routes import (
    dispatch,
    health,
)

# Main API router (mounted at /api/v1)
api_router = APIRouter()

# Include health check
api_router.include_router(health.router)

# Dispatch board, actions and live updates
api_router.include_router(dispatch.router)

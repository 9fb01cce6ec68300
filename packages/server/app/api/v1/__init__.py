"""
API v1 Router

Channels are addressed by global id; user-scoped routes live under /users/{userId}.
"""

from fastapi import APIRouter
from . import bounces, communication_channels

router = APIRouter()

router.include_router(
    communication_channels.user_router,
    prefix="/users/{userId}/communication_channels",
    tags=["Communication Channels"],
)
router.include_router(
    communication_channels.router,
    prefix="/communication_channels",
    tags=["Communication Channels"],
)
router.include_router(bounces.router, prefix="/bounces", tags=["Bounces"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/users/{userId}/communication_channels",
            "/communication_channels/{channelId}",
            "/bounces",
        ],
    }

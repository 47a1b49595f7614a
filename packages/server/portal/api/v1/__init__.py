"""
API v1 Router

Channel and message endpoints live under /channels. The realtime socket
is mounted at the application root (/ws) by the app factory.
"""

from fastapi import APIRouter

from . import channels

router = APIRouter()

router.include_router(channels.router, prefix="/channels", tags=["Channels"])


@router.get("/", tags=["API"])
async def api_root():
    """API root - returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/channels",
            "/channels/{channelId}/messages",
            "/ws",
        ],
    }

"""
Health Check Router
"""

import platform

from fastapi import APIRouter

from meter_sync.util.time_util import utc_now

router = APIRouter()


@router.get("/health", summary="Health Check", description="Check if the agent API is running")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "service": "Meter Sync Agent",
        "python_version": platform.python_version(),
    }


@router.get("/ping", summary="Ping", description="Simple connectivity test")
async def ping():
    return {"message": "pong"}

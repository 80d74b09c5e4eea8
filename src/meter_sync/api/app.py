"""
Local status API

Small FastAPI surface served next to the agent for on-site diagnostics:
health, pipeline status, upload statistics and a manual upload trigger.
"""

import logging

from fastapi import FastAPI

from meter_sync.api.router import health, sync
from meter_sync.sync_agent import SyncAgent

logger = logging.getLogger("MeterSyncAPI")


def create_application(agent: SyncAgent) -> FastAPI:
    """
    Create the status API bound to a running agent.

    The agent's lifecycle is owned by main; the app only reads from it.
    """
    app = FastAPI(
        title="Meter Sync Agent API",
        description="Local status and control endpoints of the meter reading sync agent",
        version="0.3.0",
    )
    app.state.agent = agent

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])

    return app

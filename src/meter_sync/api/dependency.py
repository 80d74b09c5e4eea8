"""FastAPI dependency injection"""

from fastapi import Request

from meter_sync.sync_agent import SyncAgent


def get_sync_agent(request: Request) -> SyncAgent:
    """Provide the SyncAgent from app state."""
    return request.app.state.agent

"""
Sync Router

Pipeline status, upload statistics and the manual upload trigger.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from meter_sync.api.dependency import get_sync_agent
from meter_sync.exception import QueueStoreError
from meter_sync.model.enum.upload_enum import UploadCycleOutcome
from meter_sync.sync_agent import SyncAgent, to_jsonable

logger = logging.getLogger("SyncRouter")
router = APIRouter()


@router.get("/status", summary="Pipeline status")
async def get_status(agent: SyncAgent = Depends(get_sync_agent)):
    """Queue depth, last upload cycle, cumulative counters, connectivity and per-subsystem errors."""
    return await agent.get_status()


@router.post("/trigger", summary="Upload now")
async def trigger_upload(agent: SyncAgent = Depends(get_sync_agent)):
    result = await agent.trigger_upload()
    if result.outcome == UploadCycleOutcome.SKIPPED:
        raise HTTPException(status_code=409, detail="an upload cycle is already running")

    logger.info(f"[API] manual upload: {result.outcome.value}, uploaded={result.uploaded_rows}")
    return {
        "outcome": result.outcome.value,
        "uploaded": result.uploaded_rows,
        "failed": result.failed_count,
        "batches": result.batches,
        "duration_sec": round(result.duration_sec, 3),
        "error": result.error_message,
        "errors": to_jsonable(result.errors),
    }


@router.get("/stats", summary="Upload statistics")
async def get_stats(hours: int = Query(default=24, ge=1, le=24 * 30), agent: SyncAgent = Depends(get_sync_agent)):
    try:
        return await agent.get_sync_stats(hours)
    except QueueStoreError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e


@router.get("/logs", summary="Recent upload cycles")
async def get_recent_logs(limit: int = Query(default=20, ge=1, le=500), agent: SyncAgent = Depends(get_sync_agent)):
    try:
        return await agent.queue.get_recent_sync_logs(limit)
    except QueueStoreError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

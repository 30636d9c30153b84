"""HTTP route definitions for the service."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.schemas import (
    CompactionReportResponse,
    HistoryRecord,
    LatestValueRecord,
    StatsResponse,
)
from services.bridge import BridgeService, build_default_bridge

router = APIRouter()


def get_bridge() -> BridgeService:
    return build_default_bridge()


@router.get(
    "/devices",
    response_model=list[LatestValueRecord],
    summary="List the latest reading of every known device.",
)
async def list_devices(
    bridge: BridgeService = Depends(get_bridge),
) -> list[LatestValueRecord]:
    records = bridge.store.list_latest()
    return sorted(records, key=lambda record: record.device_id)


@router.get(
    "/devices/{device_id}",
    response_model=LatestValueRecord,
    summary="Fetch the latest reading for a device.",
)
async def get_device(
    device_id: str,
    bridge: BridgeService = Depends(get_bridge),
) -> LatestValueRecord:
    record = bridge.store.get_latest(device_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id!r} not found.",
        )
    return record


@router.get(
    "/devices/{device_id}/history",
    response_model=list[HistoryRecord],
    summary="Fetch recent history for a device, newest first.",
)
async def get_device_history(
    device_id: str,
    limit: int = Query(50, ge=1, le=1000),
    bridge: BridgeService = Depends(get_bridge),
) -> list[HistoryRecord]:
    if device_id not in bridge.store.list_devices():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id!r} not found.",
        )
    return bridge.store.query_history(device_id, descending=True, limit=limit)


@router.post(
    "/compaction",
    response_model=CompactionReportResponse,
    summary="Run one history compaction cycle now.",
)
def run_compaction(
    bridge: BridgeService = Depends(get_bridge),
) -> CompactionReportResponse:
    return bridge.run_compaction().to_response()


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Ingestion counters and storage usage.",
)
def get_stats(
    bridge: BridgeService = Depends(get_bridge),
) -> StatsResponse:
    return bridge.stats()


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(
    bridge: BridgeService = Depends(get_bridge),
) -> dict[str, str]:
    transport = "connected" if bridge.subscriber.is_connected else "disconnected"
    return {"status": "ok", "transport": transport}

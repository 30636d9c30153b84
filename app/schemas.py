"""Pydantic schemas for stored documents and the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from models.records import DoorStatus


class LatestValueRecord(BaseModel):
    """Current state of a device, overwritten on every ingested reading."""

    device_id: str
    temperature: float
    door_status: DoorStatus
    timestamp: str = Field(..., description="Producer-assigned ISO-8601 timestamp.")
    humidity: Optional[float] = None
    name: Optional[str] = None
    last_updated: datetime = Field(..., description="Server-assigned write time.")


class HistoryRecord(BaseModel):
    """Append-only time-series entry for a single ingested reading."""

    id: str
    device_id: str
    temperature: float
    door_status: DoorStatus
    timestamp: str
    humidity: Optional[float] = None
    name: Optional[str] = None
    saved_at: datetime = Field(..., description="Server-assigned insert time.")


class DeviceCompactionSummary(BaseModel):
    device_id: str
    aged_deleted: int = Field(..., ge=0)
    excess_deleted: int = Field(..., ge=0)
    skipped: bool = False
    error: Optional[str] = None


class CompactionReportResponse(BaseModel):
    """Outcome of a single compaction cycle across all devices."""

    started_at: datetime
    finished_at: datetime
    cutoff: datetime
    total_deleted: int = Field(..., ge=0)
    error: Optional[str] = None
    devices: List[DeviceCompactionSummary] = Field(default_factory=list)


class IngestionCounters(BaseModel):
    received: int = 0
    acknowledged: int = 0
    malformed: int = 0
    failed: int = 0
    partial: int = 0


class StorageStats(BaseModel):
    device_count: int = Field(..., ge=0)
    history_records: int = Field(..., ge=0)
    per_device: Dict[str, int] = Field(default_factory=dict)


class StatsResponse(BaseModel):
    ingestion: IngestionCounters
    storage: StorageStats
    transport_connected: bool

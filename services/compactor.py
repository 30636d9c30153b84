"""Time- and count-bounded retention for per-device history."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, List, Optional

from app.schemas import CompactionReportResponse, DeviceCompactionSummary
from datastore.mock_document_store import MockDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class DeviceCompactionResult:
    device_id: str
    aged_deleted: int = 0
    excess_deleted: int = 0
    skipped: bool = False
    error: Optional[str] = None

    @property
    def total_deleted(self) -> int:
        return self.aged_deleted + self.excess_deleted


@dataclass
class CompactionReport:
    """Counts deleted and errors captured per device for one cycle."""

    started_at: datetime
    cutoff: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    devices: Dict[str, DeviceCompactionResult] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return sum(result.total_deleted for result in self.devices.values())

    @property
    def errors(self) -> Dict[str, str]:
        return {
            device_id: result.error
            for device_id, result in self.devices.items()
            if result.error is not None
        }

    def to_response(self) -> CompactionReportResponse:
        return CompactionReportResponse(
            started_at=self.started_at,
            finished_at=self.finished_at or self.started_at,
            cutoff=self.cutoff,
            total_deleted=self.total_deleted,
            error=self.error,
            devices=[
                DeviceCompactionSummary(
                    device_id=result.device_id,
                    aged_deleted=result.aged_deleted,
                    excess_deleted=result.excess_deleted,
                    skipped=result.skipped,
                    error=result.error,
                )
                for result in self.devices.values()
            ],
        )


class RetentionCompactor:
    """Delete aged history, then cap what is left to the most recent records.

    The aged pass removes at most one batch per device per cycle; anything
    older that remains is swept on the next tick. A device is never compacted
    by two passes at once.
    """

    def __init__(
        self,
        store: MockDocumentStore,
        retention: timedelta,
        max_records_per_device: int,
        batch_size: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_records_per_device <= 0:
            raise ValueError("max_records_per_device must be positive.")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive.")
        self.store = store
        self.retention = retention
        self.max_records_per_device = max_records_per_device
        self.batch_size = min(batch_size, store.max_batch_size)
        self._clock = clock or store.now
        self._device_locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

    def compact(self) -> CompactionReport:
        """Run one compaction cycle across all devices; never raises."""
        started_at = self._clock()
        cutoff = started_at - self.retention
        report = CompactionReport(started_at=started_at, cutoff=cutoff)
        start = time.perf_counter()
        logger.info("Starting history compaction cycle (cutoff=%s)", cutoff.isoformat())

        try:
            device_ids = self.store.list_devices()
        except Exception as exc:
            report.error = str(exc)
            logger.exception("Could not list devices for compaction", extra={"reason": str(exc)})
            device_ids = []

        for device_id in device_ids:
            report.devices[device_id] = self.compact_device(device_id, cutoff)

        report.finished_at = self._clock()
        logger.info(
            "History compaction cycle completed",
            extra={
                "deleted": report.total_deleted,
                "device_count": len(device_ids),
                "error_count": len(report.errors) + (1 if report.error else 0),
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return report

    def compact_device(self, device_id: str, cutoff: datetime) -> DeviceCompactionResult:
        result = DeviceCompactionResult(device_id=device_id)
        lock = self._lock_for(device_id)
        if not lock.acquire(blocking=False):
            result.skipped = True
            logger.warning(
                "Compaction already running for device; skipping",
                extra={"device_id": device_id},
            )
            return result

        try:
            result.aged_deleted = self._delete_aged(device_id, cutoff)
            result.excess_deleted = self._delete_excess(device_id)
        except Exception as exc:
            result.error = str(exc)
            logger.error(
                "History compaction failed for device",
                exc_info=True,
                extra={
                    "device_id": device_id,
                    "reason": str(exc),
                    "aged_deleted": result.aged_deleted,
                },
            )
            return result
        finally:
            lock.release()

        if result.total_deleted:
            logger.info(
                "Compacted device history",
                extra={
                    "device_id": device_id,
                    "aged_deleted": result.aged_deleted,
                    "excess_deleted": result.excess_deleted,
                },
            )
        return result

    def _delete_aged(self, device_id: str, cutoff: datetime) -> int:
        page = self.store.query_history(device_id, saved_before=cutoff, limit=self.batch_size)
        if not page:
            return 0
        return self.store.delete_history_batch(device_id, [record.id for record in page])

    def _delete_excess(self, device_id: str) -> int:
        records = self.store.query_history(device_id, descending=True)
        excess = records[self.max_records_per_device:]
        if not excess:
            return 0

        deleted = 0
        for batch in _chunks([record.id for record in excess], self.batch_size):
            deleted += self.store.delete_history_batch(device_id, batch)
        return deleted

    def _lock_for(self, device_id: str) -> Lock:
        with self._locks_guard:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = self._device_locks[device_id] = Lock()
            return lock


def _chunks(items: List[str], size: int) -> List[List[str]]:
    return [items[index:index + size] for index in range(0, len(items), size)]

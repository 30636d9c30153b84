"""Dual-sink fan-out of a reading into the latest-value and history stores."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from app.schemas import HistoryRecord, LatestValueRecord
from datastore.mock_document_store import MockDocumentStore
from models.records import Reading

LATEST_SINK = "latest"
HISTORY_SINK = "history"
_SINKS = (LATEST_SINK, HISTORY_SINK)


class WriteError(Exception):
    """One or both sink writes failed.

    ``partial`` is true when exactly one of the two writes committed, leaving
    the sinks out of step until the message is redelivered.
    """

    def __init__(
        self,
        device_id: str,
        failed_sinks: Tuple[str, ...],
        cause: BaseException,
    ) -> None:
        self.device_id = device_id
        self.failed_sinks = failed_sinks
        self.cause = cause
        self.partial = len(failed_sinks) < len(_SINKS)
        super().__init__(
            f"Write for device {device_id!r} failed on {', '.join(failed_sinks)}: {cause}"
        )


@dataclass(frozen=True)
class WriteOutcome:
    latest: LatestValueRecord
    history: HistoryRecord


class DualSinkWriter:
    """Issue both sink writes concurrently and join on both outcomes."""

    def __init__(
        self,
        store: MockDocumentStore,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.executor = executor or ThreadPoolExecutor(
            max_workers=len(_SINKS), thread_name_prefix="sink-writer"
        )

    def write(self, reading: Reading) -> WriteOutcome:
        fields = reading.sink_fields()
        futures = {
            LATEST_SINK: self.executor.submit(self.store.set_latest, reading.device_id, fields),
            HISTORY_SINK: self.executor.submit(self.store.add_history, reading.device_id, fields),
        }
        wait(futures.values())

        errors: Dict[str, BaseException] = {}
        for sink in _SINKS:
            exc = futures[sink].exception()
            if exc is not None:
                errors[sink] = exc

        if errors:
            failed = tuple(errors)
            raise WriteError(reading.device_id, failed, cause=errors[failed[0]])

        return WriteOutcome(
            latest=futures[LATEST_SINK].result(),
            history=futures[HISTORY_SINK].result(),
        )

    def shutdown(self) -> None:
        """Release writer threads, letting in-flight writes finish."""
        self.executor.shutdown(wait=True)

from __future__ import annotations
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from app.schemas import HistoryRecord, LatestValueRecord
from settings import get_settings

logger = logging.getLogger(__name__)

MAX_BATCH_OPERATIONS = 500


class BatchLimitExceededError(ValueError):
    """Raised when a batch carries more operations than the store accepts."""


class StoreCorruptedError(RuntimeError):
    """The persisted store file exists but cannot be loaded."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MockDocumentStore:
    """In-process document store with a latest table and per-device history.

    Every operation is atomic at the single-document level; a batch delete is
    atomic across its documents. Nothing spans the two logical stores. With a
    persistence path, a change is on disk before it becomes visible, so a
    failed write leaves the store as it was.
    """

    def __init__(
        self,
        name: str,
        persistence_path: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_batch_size: int = MAX_BATCH_OPERATIONS,
    ) -> None:
        self.name = name
        self.persistence_path = persistence_path
        self.max_batch_size = max_batch_size
        self._clock = clock or _utc_now
        self._latest: Dict[str, LatestValueRecord] = {}
        self._history: Dict[str, List[HistoryRecord]] = {}
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def now(self) -> datetime:
        """Current server time, the source of every server-assigned timestamp."""
        return self._clock()

    def set_latest(self, device_id: str, fields: Mapping[str, Any]) -> LatestValueRecord:
        """Upsert-merge the latest-value document and stamp ``last_updated``."""
        with self._lock:
            current = self._latest.get(device_id)
            merged: Dict[str, Any] = current.model_dump() if current else {}
            merged.update({key: value for key, value in fields.items() if value is not None})
            merged["device_id"] = device_id
            merged["last_updated"] = self.now()
            record = LatestValueRecord.model_validate(merged)
            latest = {**self._latest, device_id: record}
            self._persist(latest, self._history)
            self._latest = latest
            return record.model_copy(deep=True)
    def get_latest(self, device_id: str) -> Optional[LatestValueRecord]:
        with self._lock:
            record = self._latest.get(device_id)
            if record is None:
                return None
            return record.model_copy(deep=True)

    def list_latest(self) -> list[LatestValueRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._latest.values()]

    def list_devices(self) -> list[str]:
        """Ids of every device holding a latest-value or a history document."""
        with self._lock:
            return sorted(set(self._latest) | set(self._history))

    def add_history(self, device_id: str, fields: Mapping[str, Any]) -> HistoryRecord:
        """Append a history document with an auto id and a ``saved_at`` stamp."""
        payload = dict(fields)
        payload["id"] = uuid4().hex
        payload["device_id"] = device_id
        with self._lock:
            payload["saved_at"] = self.now()
            record = HistoryRecord.model_validate(payload)
            history = {**self._history, device_id: [*self._history.get(device_id, ()), record]}
            self._persist(self._latest, history)
            self._history = history
            return record.model_copy(deep=True)

    def query_history(
        self,
        device_id: str,
        saved_before: Optional[datetime] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[HistoryRecord]:
        """Return history ordered by ``saved_at``, filtered and limited."""
        with self._lock:
            records = list(self._history.get(device_id, ()))

        if saved_before is not None:
            records = [record for record in records if record.saved_at < saved_before]
        # sorted() is stable, so equal stamps keep insertion order
        records = sorted(records, key=lambda record: record.saved_at, reverse=descending)
        if limit is not None:
            records = records[:limit]
        return [record.model_copy(deep=True) for record in records]

    def count_history(self, device_id: str) -> int:
        with self._lock:
            return len(self._history.get(device_id, ()))

    def delete_history_batch(self, device_id: str, record_ids: Sequence[str]) -> int:
        """Atomically delete the given history documents; returns how many existed."""
        if len(record_ids) > self.max_batch_size:
            raise BatchLimitExceededError(
                f"Batch of {len(record_ids)} deletes exceeds limit of {self.max_batch_size}."
            )
        doomed = set(record_ids)
        with self._lock:
            records = self._history.get(device_id)
            if not records or not doomed:
                return 0
            remaining = [record for record in records if record.id not in doomed]
            deleted = len(records) - len(remaining)
            if not deleted:
                return 0
            history = dict(self._history)
            if remaining:
                history[device_id] = remaining
            else:
                del history[device_id]
            self._persist(self._latest, history)
            self._history = history
            return deleted

    def _persist(
        self,
        latest: Mapping[str, LatestValueRecord],
        history: Mapping[str, List[HistoryRecord]],
    ) -> None:
        """Write the given state to disk before it replaces the in-memory state.

        The file is swapped in with ``os.replace`` so a crash mid-write leaves
        the previous snapshot intact.
        """
        if not self.persistence_path:
            return
        payload = {
            "latest": {device_id: record.model_dump(mode="json") for device_id, record in latest.items()},
            "history": {
                device_id: [record.model_dump(mode="json") for record in records]
                for device_id, records in history.items()
            },
        }
        target = self.persistence_path
        handle = tempfile.NamedTemporaryFile(
            "w", dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
        )
        try:
            with handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(handle.name, target)
        except BaseException:
            Path(handle.name).unlink(missing_ok=True)
            raise

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text()
            data = json.loads(raw)
            latest = {
                device_id: LatestValueRecord.model_validate(payload)
                for device_id, payload in data.get("latest", {}).items()
            }
            history = {
                device_id: [HistoryRecord.model_validate(item) for item in items]
                for device_id, items in data.get("history", {}).items()
            }
        except (OSError, ValueError, AttributeError) as exc:
            logger.error(
                "Store file %s is unreadable; refusing to start over it",
                self.persistence_path,
                extra={"reason": str(exc)},
            )
            raise StoreCorruptedError(f"Store file {self.persistence_path} is unreadable: {exc}") from exc

        self._latest = latest
        self._history = history


@lru_cache
def build_default_store(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> MockDocumentStore:
    settings = get_settings()
    store_name = settings.store_name if name is None else name
    store_path = settings.store_persistence_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return MockDocumentStore(name=store_name, persistence_path=persistence)

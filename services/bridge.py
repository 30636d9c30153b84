"""Process-wide lifecycle state for the telemetry bridge."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from app.schemas import StatsResponse, StorageStats
from datastore.mock_document_store import MockDocumentStore, StoreCorruptedError, build_default_store
from services.compactor import CompactionReport, RetentionCompactor
from services.ingestion import IngestionHandler
from services.scheduler import Scheduler
from services.writer import DualSinkWriter
from settings import Settings, get_settings
from transport.client import TransportConnectError
from transport.mqtt_subscriber import MQTTSubscriber

logger = logging.getLogger(__name__)

_SECONDS_PER_HOUR = 60 * 60


class StartupError(RuntimeError):
    """The bridge could not reach its transport or persistence."""


class BridgeService:
    """Wires transport, ingestion, writer, compactor and scheduler together.

    Every collaborator is constructed once and injected; nothing is acquired
    ad hoc after :meth:`start`.
    """

    def __init__(
        self,
        settings: Settings,
        store: MockDocumentStore,
        writer: DualSinkWriter,
        handler: IngestionHandler,
        compactor: RetentionCompactor,
        subscriber: MQTTSubscriber,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.writer = writer
        self.handler = handler
        self.compactor = compactor
        self.subscriber = subscriber
        self.scheduler = scheduler or Scheduler()
        self._started = False

    def start(self) -> None:
        try:
            self.store.list_devices()
        except Exception as exc:
            raise StartupError(f"Persistence store {self.store.name!r} unavailable: {exc}") from exc

        try:
            self.subscriber.connect(timeout=self.settings.connect_timeout)
        except TransportConnectError as exc:
            raise StartupError(str(exc)) from exc

        self.scheduler.schedule(
            "compaction",
            interval=self.settings.compaction_interval_hours * _SECONDS_PER_HOUR,
            func=self.compactor.compact,
            initial_delay=self.settings.compaction_initial_delay,
        )
        self.scheduler.schedule(
            "storage-stats",
            interval=self.settings.stats_interval_hours * _SECONDS_PER_HOUR,
            func=self.log_stats,
        )
        self.scheduler.start()
        self._started = True
        logger.info(
            "Telemetry bridge started: latest + %s days history, compaction every %s hours",
            self.settings.retention_days,
            self.settings.compaction_interval_hours,
            extra={"topic": self.settings.topic},
        )

    def stop(self, final_compaction: bool = True) -> Optional[CompactionReport]:
        """Shut down timers, compact once more, drain writes, then disconnect."""
        if not self._started:
            return None
        self._started = False
        timeout = self.settings.shutdown_timeout
        logger.info("Stopping telemetry bridge")

        self.scheduler.stop(timeout=timeout)

        report: Optional[CompactionReport] = None
        if final_compaction:
            report = self._run_final_compaction(timeout)

        if not self.handler.drain(timeout=timeout):
            logger.warning(
                "Timed out waiting for in-flight writes",
                extra={"record_count": self.handler.in_flight},
            )
        self.subscriber.disconnect()
        self.writer.shutdown()
        logger.info("Telemetry bridge stopped")
        return report

    def run_compaction(self) -> CompactionReport:
        return self.compactor.compact()

    def storage_stats(self) -> StorageStats:
        per_device = {
            device_id: self.store.count_history(device_id)
            for device_id in self.store.list_devices()
        }
        return StorageStats(
            device_count=len(per_device),
            history_records=sum(per_device.values()),
            per_device=per_device,
        )

    def stats(self) -> StatsResponse:
        return StatsResponse(
            ingestion=self.handler.stats.snapshot(),
            storage=self.storage_stats(),
            transport_connected=self.subscriber.is_connected,
        )

    def log_stats(self) -> None:
        snapshot = self.stats()
        ingestion = snapshot.ingestion
        logger.info(
            "Storage stats: received=%d acknowledged=%d malformed=%d failed=%d partial=%d",
            ingestion.received,
            ingestion.acknowledged,
            ingestion.malformed,
            ingestion.failed,
            ingestion.partial,
            extra={
                "device_count": snapshot.storage.device_count,
                "record_count": snapshot.storage.history_records,
            },
        )

    def _run_final_compaction(self, timeout: float) -> Optional[CompactionReport]:
        logger.info("Running final compaction before shutdown")
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="final-compaction")
        future = executor.submit(self.compactor.compact)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning("Final compaction did not finish within %ss", timeout)
            return None
        finally:
            executor.shutdown(wait=False)


@lru_cache
def build_default_bridge() -> BridgeService:
    """Factory that wires the bridge from environment settings."""
    settings = get_settings()
    try:
        store = build_default_store()
    except StoreCorruptedError as exc:
        raise StartupError(str(exc)) from exc
    writer = DualSinkWriter(store)
    handler = IngestionHandler(writer)
    compactor = RetentionCompactor(
        store,
        retention=timedelta(days=settings.retention_days),
        max_records_per_device=settings.max_records_per_device,
        batch_size=settings.batch_size,
    )
    subscriber = MQTTSubscriber(
        broker_host=settings.broker_host,
        broker_port=settings.broker_port,
        topic=settings.topic,
        handler=handler.on_message,
        client_id=settings.client_id,
        username=settings.broker_username,
        password=settings.broker_password,
        use_tls=settings.use_tls,
    )
    return BridgeService(
        settings=settings,
        store=store,
        writer=writer,
        handler=handler,
        compactor=compactor,
        subscriber=subscriber,
    )

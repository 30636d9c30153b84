"""Decode transport messages and fan them out to the dual-sink writer."""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Condition, Lock
from typing import Any, Dict, Optional

from app.schemas import IngestionCounters
from models.records import DoorStatus, Reading
from services.writer import DualSinkWriter, WriteError

logger = logging.getLogger(__name__)


class MalformedMessageError(ValueError):
    """Payload cannot be decoded into a reading; redelivery will not help."""


class AckDecision(str, Enum):
    """Whether the transport should acknowledge a delivered message."""

    ack = "ack"
    retry = "retry"


@dataclass
class IngestionStats:
    received: int = 0
    acknowledged: int = 0
    malformed: int = 0
    failed: int = 0
    partial: int = 0

    def __post_init__(self) -> None:
        self._lock = Lock()

    def increment(self, **counts: int) -> None:
        with self._lock:
            for name, amount in counts.items():
                setattr(self, name, getattr(self, name) + amount)

    def snapshot(self) -> IngestionCounters:
        with self._lock:
            return IngestionCounters(
                received=self.received,
                acknowledged=self.acknowledged,
                malformed=self.malformed,
                failed=self.failed,
                partial=self.partial,
            )


def parse_reading(payload: bytes) -> Reading:
    """Decode a UTF-8 JSON payload into a :class:`Reading`.

    Only the minimal shape is checked. Unknown fields such as ``powerStatus``
    or ``compressorStatus`` are ignored.
    """
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError(f"invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedMessageError("payload is not a JSON object")

    device_id = data.get("deviceId")
    if not isinstance(device_id, str) or not device_id.strip():
        raise MalformedMessageError("missing deviceId")

    temperature = _parse_number(data.get("temperature"), "temperature")
    if temperature is None:
        raise MalformedMessageError("missing temperature")
    humidity = _parse_number(data.get("humidity"), "humidity")

    try:
        door_status = DoorStatus(data.get("doorStatus"))
    except ValueError as exc:
        raise MalformedMessageError(f"invalid doorStatus: {data.get('doorStatus')!r}") from exc

    timestamp = data.get("timestamp")
    if not isinstance(timestamp, str) or not timestamp.strip():
        raise MalformedMessageError("missing timestamp")
    _validate_timestamp(timestamp)

    name = data.get("name")
    if name is not None and not isinstance(name, str):
        raise MalformedMessageError("name must be a string")

    return Reading(
        device_id=device_id.strip(),
        temperature=temperature,
        door_status=door_status,
        timestamp=timestamp.strip(),
        humidity=humidity,
        name=name,
    )


def _parse_number(value: Any, field: str) -> Optional[float]:
    if value is None:
        return None
    # bool is an int subclass
    if isinstance(value, bool):
        raise MalformedMessageError(f"invalid {field}")
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError as exc:
            raise MalformedMessageError(f"invalid {field}: out of range") from exc
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise MalformedMessageError(f"invalid {field}: {value!r}") from exc
    else:
        raise MalformedMessageError(f"invalid {field}")
    # NaN and infinities pass float() and json.loads
    if not math.isfinite(number):
        raise MalformedMessageError(f"non-finite {field}: {value!r}")
    return number


def _validate_timestamp(value: str) -> datetime:
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise MalformedMessageError(f"invalid timestamp: {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class IngestionHandler:
    """Turns one delivered message into an acknowledgment decision.

    Malformed messages are acknowledged and dropped. A failed sink write leaves
    the message unacknowledged so the transport redelivers it, which may append
    a duplicate history record.
    """

    def __init__(self, writer: DualSinkWriter) -> None:
        self.writer = writer
        self.stats = IngestionStats()
        self._in_flight = 0
        self._idle = Condition()

    def on_message(self, topic: str, payload: bytes) -> AckDecision:
        self.stats.increment(received=1)
        with self._idle:
            self._in_flight += 1
        try:
            return self._handle(topic, payload)
        finally:
            with self._idle:
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._idle.notify_all()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until no message is being handled; False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    @property
    def in_flight(self) -> int:
        with self._idle:
            return self._in_flight

    def _handle(self, topic: str, payload: bytes) -> AckDecision:
        try:
            reading = parse_reading(payload)
        except MalformedMessageError as exc:
            self.stats.increment(malformed=1, acknowledged=1)
            logger.error(
                "Dropping malformed message",
                extra={"topic": topic, "reason": str(exc), "outcome": AckDecision.ack.value},
            )
            return AckDecision.ack

        context: Dict[str, Any] = {
            "topic": topic,
            "device_id": reading.device_id,
        }
        logger.info(
            "Received reading temperature=%s door_status=%s timestamp=%s",
            reading.temperature,
            reading.door_status.value,
            reading.timestamp,
            extra=context,
        )

        start = time.perf_counter()
        try:
            self.writer.write(reading)
        except WriteError as exc:
            if exc.partial:
                self.stats.increment(failed=1, partial=1)
            else:
                self.stats.increment(failed=1)
            logger.error(
                "Sink write failed; leaving message unacknowledged for redelivery",
                extra={
                    **context,
                    "sink": ",".join(exc.failed_sinks),
                    "reason": str(exc.cause),
                    "outcome": AckDecision.retry.value,
                },
            )
            return AckDecision.retry

        self.stats.increment(acknowledged=1)
        logger.info(
            "Saved reading to latest and history",
            extra={
                **context,
                "outcome": AckDecision.ack.value,
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return AckDecision.ack

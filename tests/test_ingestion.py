"""Tests for message decoding and the ingestion handler's ack policy."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import pytest

from datastore.mock_document_store import MockDocumentStore
from models.records import DoorStatus
from services.ingestion import (
    AckDecision,
    IngestionHandler,
    MalformedMessageError,
    parse_reading,
)
from services.writer import DualSinkWriter

TOPIC = "refrigerators/data"


class FlakyHistoryStore(MockDocumentStore):
    def __init__(self) -> None:
        super().__init__(name="test")
        self.fail_history = False

    def add_history(self, device_id, fields):
        if self.fail_history:
            raise TimeoutError("history write timed out")
        return super().add_history(device_id, fields)


def _payload(**overrides) -> bytes:
    data = {
        "deviceId": "FRIDGE_001",
        "temperature": 4.5,
        "humidity": "48.20",
        "doorStatus": "closed",
        "timestamp": "2024-05-01T10:00:00.000Z",
    }
    data.update(overrides)
    return json.dumps(data).encode("utf-8")


@pytest.fixture()
def store() -> FlakyHistoryStore:
    return FlakyHistoryStore()


@pytest.fixture()
def handler(store: FlakyHistoryStore):
    writer = DualSinkWriter(store)
    yield IngestionHandler(writer)
    writer.shutdown()


def test_parse_reading_accepts_string_numbers_and_ignores_extras() -> None:
    reading = parse_reading(
        _payload(
            temperature="5.25",
            powerStatus="on",
            compressorStatus="running",
            name="Kitchen",
        )
    )

    assert reading.device_id == "FRIDGE_001"
    assert reading.temperature == 5.25
    assert reading.humidity == 48.2
    assert reading.door_status is DoorStatus.closed
    assert reading.timestamp == "2024-05-01T10:00:00.000Z"
    assert reading.name == "Kitchen"


def test_parse_reading_allows_missing_humidity() -> None:
    data = json.loads(_payload())
    del data["humidity"]

    reading = parse_reading(json.dumps(data).encode("utf-8"))

    assert reading.humidity is None


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"\xff\xfe",
        b"[1, 2, 3]",
        _payload(deviceId=""),
        _payload(deviceId=42),
        _payload(temperature=None),
        _payload(temperature="warm"),
        _payload(temperature=True),
        _payload(humidity="damp"),
        _payload(doorStatus="ajar"),
        _payload(timestamp="yesterday"),
        _payload(timestamp=1714557600),
        _payload(name=7),
        _payload(temperature="nan"),
        _payload(temperature="inf"),
        _payload(humidity="-inf"),
        _payload(temperature=float("nan")),
        _payload(temperature=10**400),
    ],
)
def test_parse_reading_rejects_malformed_payloads(payload: bytes) -> None:
    with pytest.raises(MalformedMessageError):
        parse_reading(payload)


def test_malformed_message_is_acknowledged_without_writes(
    handler: IngestionHandler, store: FlakyHistoryStore, caplog
) -> None:
    with caplog.at_level(logging.ERROR, logger="services.ingestion"):
        decision = handler.on_message(TOPIC, b"{not valid json")

    assert decision is AckDecision.ack
    assert store.list_devices() == []
    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert len(errors) == 1
    assert errors[0].getMessage() == "Dropping malformed message"
    assert getattr(errors[0], "topic") == TOPIC
    assert handler.stats.snapshot().malformed == 1


def test_end_to_end_reading_updates_latest_and_history(
    handler: IngestionHandler, store: FlakyHistoryStore
) -> None:
    before = datetime.now(timezone.utc)
    decision = handler.on_message(
        TOPIC,
        _payload(temperature=4.5, doorStatus="closed", timestamp="2024-05-01T10:00:00Z"),
    )

    assert decision is AckDecision.ack
    latest = store.get_latest("FRIDGE_001")
    assert latest is not None
    assert latest.temperature == 4.5
    assert latest.door_status is DoorStatus.closed
    assert latest.timestamp == "2024-05-01T10:00:00Z"

    history = store.query_history("FRIDGE_001")
    assert len(history) == 1
    assert history[0].temperature == 4.5
    assert history[0].door_status is DoorStatus.closed
    assert history[0].timestamp == "2024-05-01T10:00:00Z"
    assert history[0].saved_at >= before


def test_latest_reflects_last_written_reading(
    handler: IngestionHandler, store: FlakyHistoryStore
) -> None:
    for temperature, door in [(3.0, "closed"), (7.5, "open"), (5.0, "closed")]:
        assert handler.on_message(TOPIC, _payload(temperature=temperature, doorStatus=door)) is AckDecision.ack

    latest = store.get_latest("FRIDGE_001")
    assert latest is not None
    assert latest.temperature == 5.0
    assert latest.door_status is DoorStatus.closed
    assert store.count_history("FRIDGE_001") == 3


def test_partial_write_is_retried_and_completed_on_redelivery(
    handler: IngestionHandler, store: FlakyHistoryStore, caplog
) -> None:
    message = _payload(temperature=6.1)
    store.fail_history = True

    with caplog.at_level(logging.ERROR, logger="services.ingestion"):
        first = handler.on_message(TOPIC, message)

    assert first is AckDecision.retry
    latest = store.get_latest("FRIDGE_001")
    assert latest is not None and latest.temperature == 6.1
    assert store.count_history("FRIDGE_001") == 0
    failure = next(record for record in caplog.records if record.levelno == logging.ERROR)
    assert getattr(failure, "sink") == "history"
    assert getattr(failure, "device_id") == "FRIDGE_001"

    store.fail_history = False
    second = handler.on_message(TOPIC, message)

    assert second is AckDecision.ack
    assert store.count_history("FRIDGE_001") == 1
    counters = handler.stats.snapshot()
    assert counters.received == 2
    assert counters.failed == 1
    assert counters.partial == 1
    assert counters.acknowledged == 1


def test_redelivered_message_adds_at_most_one_history_record(
    handler: IngestionHandler, store: FlakyHistoryStore
) -> None:
    message = _payload(temperature=4.0)

    handler.on_message(TOPIC, message)
    first_latest = store.get_latest("FRIDGE_001")
    handler.on_message(TOPIC, message)
    second_latest = store.get_latest("FRIDGE_001")

    assert first_latest is not None and second_latest is not None
    assert first_latest.model_dump(exclude={"last_updated"}) == second_latest.model_dump(
        exclude={"last_updated"}
    )
    assert store.count_history("FRIDGE_001") == 2


def test_drain_returns_immediately_when_idle(handler: IngestionHandler) -> None:
    handler.on_message(TOPIC, _payload())

    assert handler.drain(timeout=0.1) is True
    assert handler.in_flight == 0


def test_non_finite_temperature_is_dropped_without_writes(
    handler: IngestionHandler, store: FlakyHistoryStore
) -> None:
    decision = handler.on_message(TOPIC, _payload(temperature=float("nan")))

    assert decision is AckDecision.ack
    assert store.list_devices() == []
    assert handler.stats.snapshot().malformed == 1

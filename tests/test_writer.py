"""Tests for the dual-sink writer's join and partial-failure contract."""

from __future__ import annotations

import threading

import pytest

from datastore.mock_document_store import MockDocumentStore
from models.records import DoorStatus, Reading
from services.writer import HISTORY_SINK, LATEST_SINK, DualSinkWriter, WriteError


class FailingStore(MockDocumentStore):
    def __init__(self, fail_latest: bool = False, fail_history: bool = False) -> None:
        super().__init__(name="test")
        self.fail_latest = fail_latest
        self.fail_history = fail_history

    def set_latest(self, device_id, fields):
        if self.fail_latest:
            raise ConnectionError("latest store unavailable")
        return super().set_latest(device_id, fields)

    def add_history(self, device_id, fields):
        if self.fail_history:
            raise ConnectionError("history store unavailable")
        return super().add_history(device_id, fields)


def _reading(temperature: float = 4.5) -> Reading:
    return Reading(
        device_id="FRIDGE_001",
        temperature=temperature,
        door_status=DoorStatus.closed,
        timestamp="2024-01-01T00:00:00Z",
        humidity=50.0,
    )


@pytest.fixture()
def writer_factory():
    writers = []

    def factory(store: MockDocumentStore) -> DualSinkWriter:
        writer = DualSinkWriter(store)
        writers.append(writer)
        return writer

    yield factory
    for writer in writers:
        writer.shutdown()


def test_write_commits_both_sinks(writer_factory) -> None:
    store = MockDocumentStore(name="test")
    writer = writer_factory(store)

    outcome = writer.write(_reading())

    assert outcome.latest.temperature == 4.5
    assert outcome.history.temperature == 4.5
    assert store.get_latest("FRIDGE_001") == outcome.latest
    assert store.query_history("FRIDGE_001") == [outcome.history]


def test_history_failure_is_partial_and_keeps_latest(writer_factory) -> None:
    store = FailingStore(fail_history=True)
    writer = writer_factory(store)

    with pytest.raises(WriteError) as excinfo:
        writer.write(_reading())

    error = excinfo.value
    assert error.partial is True
    assert error.failed_sinks == (HISTORY_SINK,)
    assert isinstance(error.cause, ConnectionError)
    assert store.get_latest("FRIDGE_001") is not None
    assert store.count_history("FRIDGE_001") == 0


def test_latest_failure_is_partial_and_keeps_history(writer_factory) -> None:
    store = FailingStore(fail_latest=True)
    writer = writer_factory(store)

    with pytest.raises(WriteError) as excinfo:
        writer.write(_reading())

    assert excinfo.value.partial is True
    assert excinfo.value.failed_sinks == (LATEST_SINK,)
    assert store.get_latest("FRIDGE_001") is None
    assert store.count_history("FRIDGE_001") == 1


def test_both_failures_are_not_partial(writer_factory) -> None:
    store = FailingStore(fail_latest=True, fail_history=True)
    writer = writer_factory(store)

    with pytest.raises(WriteError) as excinfo:
        writer.write(_reading())

    assert excinfo.value.partial is False
    assert excinfo.value.failed_sinks == (LATEST_SINK, HISTORY_SINK)
    assert "latest store unavailable" in str(excinfo.value)


def test_sink_writes_run_concurrently(writer_factory) -> None:
    barrier = threading.Barrier(2)

    class CoordinatedStore(MockDocumentStore):
        def set_latest(self, device_id, fields):
            barrier.wait(timeout=1.0)
            return super().set_latest(device_id, fields)

        def add_history(self, device_id, fields):
            barrier.wait(timeout=1.0)
            return super().add_history(device_id, fields)

    store = CoordinatedStore(name="test")
    writer = writer_factory(store)

    writer.write(_reading())

    assert store.count_history("FRIDGE_001") == 1

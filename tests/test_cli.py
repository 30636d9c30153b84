from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from typer.testing import CliRunner

from cli.app import app
from cli.config import load_config
from transport.client import TransportConnectError


class StubClient:
    def __init__(self, config) -> None:
        self.config = config
        self.history_calls: List[tuple[str, int]] = []
        self.compactions = 0
        self.latest: Dict[str, Any] = {
            "device_id": "FRIDGE_001",
            "name": "Kitchen",
            "temperature": 4.5,
            "humidity": 48.0,
            "door_status": "closed",
            "timestamp": "2024-05-01T10:00:00Z",
            "last_updated": "2024-05-01T10:00:00.120000Z",
        }
        self.closed = False

    def list_devices(self) -> List[Dict[str, Any]]:
        return [self.latest]

    def get_device(self, device_id: str) -> Dict[str, Any]:
        payload = self.latest.copy()
        payload["device_id"] = device_id
        return payload

    def get_history(self, device_id: str, limit: int) -> List[Dict[str, Any]]:
        self.history_calls.append((device_id, limit))
        return [
            {
                "id": "abc",
                "device_id": device_id,
                "temperature": 4.5,
                "door_status": "open",
                "timestamp": "2024-05-01T10:00:00Z",
                "saved_at": "2024-05-01T10:00:00.120000Z",
            }
        ]

    def run_compaction(self) -> Dict[str, Any]:
        self.compactions += 1
        return {
            "started_at": "2024-05-01T00:00:00Z",
            "finished_at": "2024-05-01T00:00:01Z",
            "cutoff": "2024-04-01T00:00:00Z",
            "total_deleted": 200,
            "error": None,
            "devices": [
                {
                    "device_id": "FRIDGE_001",
                    "aged_deleted": 0,
                    "excess_deleted": 200,
                    "skipped": False,
                    "error": None,
                },
                {
                    "device_id": "FRIDGE_002",
                    "aged_deleted": 0,
                    "excess_deleted": 0,
                    "skipped": False,
                    "error": "deadline exceeded",
                },
            ],
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "ingestion": {"received": 10, "acknowledged": 9, "malformed": 1, "failed": 0, "partial": 0},
            "storage": {"device_count": 1, "history_records": 9, "per_device": {"FRIDGE_001": 9}},
            "transport_connected": True,
        }

    def close(self) -> None:
        self.closed = True


class StubMQTTClient:
    def __init__(self) -> None:
        self.published: List[tuple[str, str, int]] = []
        self.disconnected = False

    def connect(self, host: str, port: int, keepalive: int = 60) -> None:
        self.address = (host, port)

    def loop_start(self) -> None:
        pass

    def loop_stop(self) -> None:
        pass

    def disconnect(self) -> None:
        self.disconnected = True

    def publish(self, topic: str, payload: str, qos: int = 0):
        self.published.append((topic, payload, qos))
        return SimpleNamespace(rc=0)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def stub(monkeypatch) -> StubClient:
    client = StubClient(config=None)

    def factory(config):
        client.config = config
        return client

    monkeypatch.setattr("cli.app.ApiClient", factory)
    return client


def test_devices_command(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["devices"])

    assert result.exit_code == 0
    assert "FRIDGE_001: 4.5C" in result.stdout
    assert stub.closed is True


def test_device_command(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["device", "FRIDGE_007"])

    assert result.exit_code == 0
    assert "Device FRIDGE_007" in result.stdout
    assert "name: Kitchen" in result.stdout


def test_history_command_passes_limit(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["--base-url", "http://relay:9000/", "history", "FRIDGE_001", "--limit", "5"])

    assert result.exit_code == 0
    assert stub.history_calls == [("FRIDGE_001", 5)]
    assert stub.config.base_url == "http://relay:9000"
    assert "History for FRIDGE_001" in result.stdout


def test_compact_command_renders_report(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["compact"])

    assert result.exit_code == 0
    assert stub.compactions == 1
    assert "total_deleted: 200" in result.stdout
    assert "FRIDGE_001: aged=0 excess=200" in result.stdout
    assert "error=deadline exceeded" in result.stdout


def test_stats_command(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["stats"])

    assert result.exit_code == 0
    assert "received: 10" in result.stdout
    assert "history_records: 9" in result.stdout


def test_check_connection_success(monkeypatch, runner: CliRunner, stub: StubClient) -> None:
    calls = []

    def probe(host, port, **kwargs):
        calls.append((host, port, kwargs))

    monkeypatch.setattr("cli.app.probe_broker", probe)

    result = runner.invoke(app, ["check-connection", "--timeout", "2"])

    assert result.exit_code == 0
    assert "Connection successful" in result.stdout
    assert calls[0][2]["timeout"] == 2.0
    assert '"test": true' in calls[0][2]["payload"]


def test_check_connection_failure_exits_non_zero(monkeypatch, runner: CliRunner, stub: StubClient) -> None:
    def probe(host, port, **kwargs):
        raise TransportConnectError("Could not connect to broker within 10 seconds")

    monkeypatch.setattr("cli.app.probe_broker", probe)

    result = runner.invoke(app, ["check-connection"])

    assert result.exit_code == 1
    assert "Connection failed" in result.output


def test_simulate_publishes_for_each_device(monkeypatch, runner: CliRunner, stub: StubClient) -> None:
    mqtt_client = StubMQTTClient()
    monkeypatch.setattr("cli.app.create_mqtt_client", lambda **kwargs: mqtt_client)

    result = runner.invoke(app, ["simulate", "--devices", "2", "--count", "1"])

    assert result.exit_code == 0
    assert len(mqtt_client.published) == 2
    assert all(qos == 1 for _, _, qos in mqtt_client.published)
    assert "Published FRIDGE_001" in result.stdout
    assert "Published FRIDGE_002" in result.stdout
    assert mqtt_client.disconnected is True


def test_load_config_reads_simulator_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://relay:8080/")
    monkeypatch.setenv("SIMULATOR_DEVICES", "3")
    monkeypatch.setenv("SIMULATOR_DEVICE_PREFIX", "COOLER")
    monkeypatch.setenv("CLI_REQUEST_TIMEOUT", "-1")

    config = load_config()

    assert config.base_url == "http://relay:8080"
    assert config.simulated_devices == 3
    assert config.device_prefix == "COOLER"
    assert config.request_timeout == 30.0


def test_simulate_uses_configured_fleet(monkeypatch, runner: CliRunner, stub: StubClient) -> None:
    mqtt_client = StubMQTTClient()
    monkeypatch.setattr("cli.app.create_mqtt_client", lambda **kwargs: mqtt_client)
    monkeypatch.setenv("SIMULATOR_DEVICES", "3")
    monkeypatch.setenv("SIMULATOR_DEVICE_PREFIX", "COOLER")

    result = runner.invoke(app, ["simulate", "--count", "1"])

    assert result.exit_code == 0
    assert len(mqtt_client.published) == 3
    assert "Published COOLER_003" in result.stdout


@pytest.mark.parametrize("interval", ["0", "-1"])
def test_simulate_rejects_non_positive_interval(
    monkeypatch, runner: CliRunner, stub: StubClient, interval: str
) -> None:
    mqtt_client = StubMQTTClient()
    monkeypatch.setattr("cli.app.create_mqtt_client", lambda **kwargs: mqtt_client)

    result = runner.invoke(app, ["simulate", "--count", "1", f"--interval={interval}"])

    assert result.exit_code == 2
    assert mqtt_client.published == []

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import (
    render_compaction,
    render_device,
    render_devices,
    render_history,
    render_stats,
)
from logging_config import configure_logging
from settings import get_settings
from simulators.fridge import FridgeSimulator, device_ids
from transport.client import TransportConnectError, create_mqtt_client, probe_broker


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for operating the telemetry relay and its simulated devices.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Relay API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for each API request.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, request_timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("devices")
def devices_command(ctx: typer.Context) -> None:
    """List the latest reading of every device."""
    state = _get_state(ctx)
    render_devices(state.client.list_devices())


@app.command("device")
def device_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device identifier, e.g. FRIDGE_001."),
) -> None:
    """Show the latest reading for one device."""
    state = _get_state(ctx)
    render_device(state.client.get_device(device_id))


@app.command("history")
def history_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device identifier, e.g. FRIDGE_001."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=1000, help="Records to show."),
) -> None:
    """Show the most recent history records for a device."""
    state = _get_state(ctx)
    render_history(device_id, state.client.get_history(device_id, limit))


@app.command("compact")
def compact_command(ctx: typer.Context) -> None:
    """Trigger one history compaction cycle on the running service."""
    state = _get_state(ctx)
    typer.echo(f"Requesting compaction from {state.config.base_url} ...")
    render_compaction(state.client.run_compaction())


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    """Show ingestion counters and storage usage."""
    state = _get_state(ctx)
    render_stats(state.client.get_stats())


@app.command("simulate")
def simulate_command(
    ctx: typer.Context,
    devices: Optional[int] = typer.Option(
        None,
        "--devices",
        "-d",
        min=1,
        help="Number of simulated fridges (defaults to SIMULATOR_DEVICES env or 1).",
    ),
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        min=0.1,
        help="Seconds between publishes (defaults to SIMULATOR_INTERVAL env or 5).",
    ),
    count: Optional[int] = typer.Option(
        None,
        "--count",
        min=1,
        help="Stop after this many rounds instead of running until interrupted.",
    ),
) -> None:
    """Publish synthetic fridge readings to the configured MQTT topic."""
    configure_logging()
    state = _get_state(ctx)
    settings = get_settings()
    client = create_mqtt_client(
        client_id=f"mock_esp32_{uuid4().hex[:8]}",
        username=settings.broker_username,
        password=settings.broker_password,
        use_tls=settings.use_tls,
    )
    typer.echo(f"Connecting to {settings.broker_host}:{settings.broker_port} ...")
    try:
        client.connect(settings.broker_host, settings.broker_port, keepalive=60)
    except OSError as exc:
        typer.secho(f"Connection failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    client.loop_start()

    def announce(reading: dict) -> None:
        typer.echo(
            f"Published {reading['deviceId']}: {reading['temperature']}C "
            f"{reading['humidity']}% door={reading['doorStatus']}"
        )

    simulator = FridgeSimulator(
        client,
        topic=settings.topic,
        devices=device_ids(devices or state.config.simulated_devices, prefix=state.config.device_prefix),
        interval=state.config.publish_interval if interval is None else interval,
        on_publish=announce,
    )
    try:
        simulator.run(iterations=count)
    except KeyboardInterrupt:
        typer.echo("Stopping simulator ...")
    finally:
        simulator.stop()
        client.disconnect()
        client.loop_stop()


@app.command("check-connection")
def check_connection_command(
    timeout: float = typer.Option(10.0, "--timeout", min=0.1, help="Seconds to wait for the broker."),
) -> None:
    """Connect to the broker and publish a test message to test/connection."""
    configure_logging()
    settings = get_settings()
    typer.echo(f"Broker: {settings.broker_host}:{settings.broker_port} (tls={settings.use_tls})")
    payload = json.dumps(
        {
            "test": True,
            "message": "Hello from telemetry-relay!",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
    try:
        probe_broker(
            settings.broker_host,
            settings.broker_port,
            client_id=f"connection_test_{uuid4().hex[:8]}",
            username=settings.broker_username,
            password=settings.broker_password,
            use_tls=settings.use_tls,
            timeout=timeout,
            payload=payload,
        )
    except TransportConnectError as exc:
        typer.secho(f"Connection failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.secho("Connection successful; test message published to test/connection.", fg=typer.colors.GREEN)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", help="Port to bind."),
) -> None:
    """Run the bridge together with its HTTP API."""
    import uvicorn

    uvicorn.run("app.main:app", host=host, port=port, log_config=None, lifespan="on")

from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _door(record: Dict[str, Any]) -> str:
    status = record.get("door_status")
    if status == "open":
        return typer.style("open", fg=typer.colors.YELLOW)
    return str(status)


def render_device(record: Dict[str, Any]) -> None:
    echo_heading(f"Device {record.get('device_id')}")
    echo_key_values(
        [
            ("name", record.get("name")),
            ("temperature", record.get("temperature")),
            ("humidity", record.get("humidity")),
            ("door_status", _door(record)),
            ("timestamp", record.get("timestamp")),
            ("last_updated", record.get("last_updated")),
        ]
    )


def render_devices(records: List[Dict[str, Any]]) -> None:
    echo_heading("Devices")
    if not records:
        typer.echo("No devices reported yet.")
        return
    for record in records:
        typer.echo(
            f"  - {record.get('device_id')}: {record.get('temperature')}C "
            f"door={_door(record)} at {record.get('timestamp')}"
        )


def render_history(device_id: str, records: List[Dict[str, Any]]) -> None:
    echo_heading(f"History for {device_id}")
    if not records:
        typer.echo("No history records.")
        return
    for record in records:
        typer.echo(
            f"  - {record.get('saved_at')}: {record.get('temperature')}C "
            f"door={_door(record)} (device time {record.get('timestamp')})"
        )


def render_compaction(payload: Dict[str, Any]) -> None:
    echo_heading("Compaction Report")
    echo_key_values(
        [
            ("started_at", payload.get("started_at")),
            ("finished_at", payload.get("finished_at")),
            ("cutoff", payload.get("cutoff")),
            ("total_deleted", payload.get("total_deleted")),
        ]
    )
    if payload.get("error"):
        typer.secho(f"error: {payload['error']}", fg=typer.colors.RED)

    devices = payload.get("devices") or []
    typer.echo()
    echo_heading("Devices")
    if not devices:
        typer.echo("No devices compacted.")
        return
    for device in devices:
        line = (
            f"  - {device.get('device_id')}: aged={device.get('aged_deleted')} "
            f"excess={device.get('excess_deleted')}"
        )
        if device.get("skipped"):
            line += " (skipped, already running)"
        if device.get("error"):
            typer.secho(f"{line} error={device['error']}", fg=typer.colors.RED)
        else:
            typer.echo(line)


def render_stats(payload: Dict[str, Any]) -> None:
    ingestion = payload.get("ingestion") or {}
    storage = payload.get("storage") or {}
    echo_heading("Ingestion")
    echo_key_values(
        (key, ingestion.get(key))
        for key in ("received", "acknowledged", "malformed", "failed", "partial")
    )
    typer.echo()
    echo_heading("Storage")
    echo_key_values(
        [
            ("devices", storage.get("device_count")),
            ("history_records", storage.get("history_records")),
            ("transport_connected", payload.get("transport_connected")),
        ]
    )
    per_device = storage.get("per_device") or {}
    if per_device:
        typer.echo("per_device:")
        for device_id, count in per_device.items():
            typer.echo(f"  - {device_id}: {count}")

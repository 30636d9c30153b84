from __future__ import annotations

from typing import Any, Dict, List

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the telemetry relay service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.request_timeout)

    def close(self) -> None:
        self._client.close()

    def list_devices(self) -> List[Dict[str, Any]]:
        return self._get("/devices")

    def get_device(self, device_id: str) -> Dict[str, Any]:
        return self._get(f"/devices/{device_id}", not_found=f"Device {device_id} was not found.")

    def get_history(self, device_id: str, limit: int) -> List[Dict[str, Any]]:
        return self._get(
            f"/devices/{device_id}/history",
            params={"limit": limit},
            not_found=f"Device {device_id} was not found.",
        )

    def get_stats(self) -> Dict[str, Any]:
        return self._get("/stats")

    def run_compaction(self) -> Dict[str, Any]:
        try:
            response = self._client.post("/compaction")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def _get(self, path: str, params: Dict[str, Any] | None = None, not_found: str | None = None) -> Any:
        try:
            response = self._client.get(path, params=params)
            if response.status_code == 404 and not_found:
                raise typer.BadParameter(not_found)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def _handle_transport_error(self, exc: httpx.TransportError) -> None:
        typer.secho(
            f"Could not reach {self._config.base_url}: {exc}",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

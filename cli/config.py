from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_PUBLISH_INTERVAL = 5.0
DEFAULT_SIMULATED_DEVICES = 1
DEFAULT_DEVICE_PREFIX = "FRIDGE"

_BASE_URL_ENV = "API_BASE_URL"
_REQUEST_TIMEOUT_ENV = "CLI_REQUEST_TIMEOUT"
_PUBLISH_INTERVAL_ENV = "SIMULATOR_INTERVAL"
_SIMULATED_DEVICES_ENV = "SIMULATOR_DEVICES"
_DEVICE_PREFIX_ENV = "SIMULATOR_DEVICE_PREFIX"


@dataclass(frozen=True)
class CLIConfig:
    """Options for talking to the relay API and for the device simulator."""

    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    publish_interval: float = DEFAULT_PUBLISH_INTERVAL
    simulated_devices: int = DEFAULT_SIMULATED_DEVICES
    device_prefix: str = DEFAULT_DEVICE_PREFIX


def _positive(value: Optional[str], cast, default):
    if value is None or not value.strip():
        return default
    try:
        parsed = cast(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def load_config(
    base_url: Optional[str] = None,
    request_timeout: Optional[float] = None,
    publish_interval: Optional[float] = None,
) -> CLIConfig:
    url = base_url or os.getenv(_BASE_URL_ENV) or DEFAULT_BASE_URL
    if request_timeout is None:
        request_timeout = _positive(os.getenv(_REQUEST_TIMEOUT_ENV), float, DEFAULT_REQUEST_TIMEOUT)
    if publish_interval is None:
        publish_interval = _positive(os.getenv(_PUBLISH_INTERVAL_ENV), float, DEFAULT_PUBLISH_INTERVAL)
    prefix = (os.getenv(_DEVICE_PREFIX_ENV) or "").strip() or DEFAULT_DEVICE_PREFIX
    return CLIConfig(
        base_url=url.rstrip("/"),
        request_timeout=request_timeout,
        publish_interval=publish_interval,
        simulated_devices=_positive(os.getenv(_SIMULATED_DEVICES_ENV), int, DEFAULT_SIMULATED_DEVICES),
        device_prefix=prefix,
    )

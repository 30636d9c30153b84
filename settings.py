from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_BROKER_HOST_ENV = "MQTT_BROKER"
_BROKER_PORT_ENV = "MQTT_PORT"
_BROKER_USERNAME_ENV = "MQTT_USERNAME"
_BROKER_PASSWORD_ENV = "MQTT_PASSWORD"
_TOPIC_ENV = "MQTT_TOPIC"
_CLIENT_ID_ENV = "MQTT_CLIENT_ID"
_CONNECT_TIMEOUT_ENV = "MQTT_CONNECT_TIMEOUT"
_RETENTION_DAYS_ENV = "HISTORY_RETENTION_DAYS"
_COMPACTION_INTERVAL_ENV = "COMPACTION_INTERVAL_HOURS"
_COMPACTION_DELAY_ENV = "COMPACTION_INITIAL_DELAY_SECONDS"
_MAX_RECORDS_ENV = "MAX_HISTORY_RECORDS_PER_DEVICE"
_BATCH_SIZE_ENV = "COMPACTION_BATCH_SIZE"
_STATS_INTERVAL_ENV = "STATS_INTERVAL_HOURS"
_SHUTDOWN_TIMEOUT_ENV = "SHUTDOWN_TIMEOUT_SECONDS"
_STORE_NAME_ENV = "STORE_NAME"
_STORE_PATH_ENV = "STORE_PERSISTENCE_PATH"
_LOG_LEVEL_ENV = "LOG_LEVEL"

TLS_PORT = 8883


@dataclass(frozen=True)
class Settings:
    broker_host: str
    broker_port: int
    broker_username: Optional[str]
    broker_password: Optional[str]
    topic: str
    client_id: str
    connect_timeout: float
    retention_days: float
    compaction_interval_hours: float
    compaction_initial_delay: float
    max_records_per_device: int
    batch_size: int
    stats_interval_hours: float
    shutdown_timeout: float
    store_name: str
    store_persistence_path: Optional[str]
    log_level: str

    @property
    def use_tls(self) -> bool:
        return self.broker_port == TLS_PORT


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        broker_host=_read_str_env(_BROKER_HOST_ENV, "localhost"),
        broker_port=_read_int_env(_BROKER_PORT_ENV, 1883),
        broker_username=_read_optional_env(_BROKER_USERNAME_ENV, None),
        broker_password=_read_optional_env(_BROKER_PASSWORD_ENV, None),
        topic=_read_str_env(_TOPIC_ENV, "refrigerators/data"),
        client_id=_read_str_env(_CLIENT_ID_ENV, "telemetry_bridge"),
        connect_timeout=_read_float_env(_CONNECT_TIMEOUT_ENV, 10.0),
        retention_days=_read_float_env(_RETENTION_DAYS_ENV, 30.0),
        compaction_interval_hours=_read_float_env(_COMPACTION_INTERVAL_ENV, 24.0),
        compaction_initial_delay=_read_float_env(_COMPACTION_DELAY_ENV, 60.0),
        max_records_per_device=_read_int_env(_MAX_RECORDS_ENV, 1000),
        batch_size=_read_int_env(_BATCH_SIZE_ENV, 500),
        stats_interval_hours=_read_float_env(_STATS_INTERVAL_ENV, 6.0),
        shutdown_timeout=_read_float_env(_SHUTDOWN_TIMEOUT_ENV, 30.0),
        store_name=_read_str_env(_STORE_NAME_ENV, "refrigerators"),
        store_persistence_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/relay_store.json"),
        log_level=_read_log_level("INFO"),
    )

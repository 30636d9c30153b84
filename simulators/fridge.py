"""Simulated refrigerator controllers publishing readings over MQTT."""

from __future__ import annotations

import json
import logging
import random
from datetime import datetime, timezone
from threading import Event
from typing import Any, Callable, Dict, Optional, Sequence

logger = logging.getLogger(__name__)


def device_ids(count: int, prefix: str = "FRIDGE") -> list[str]:
    return [f"{prefix}_{index:03d}" for index in range(1, count + 1)]


def generate_reading(
    device_id: str = "FRIDGE_001",
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build one synthetic reading in the wire format devices publish."""
    rng = rng or random.Random()
    timestamp = (now or datetime.now(timezone.utc)).isoformat(timespec="milliseconds")
    return {
        "deviceId": device_id,
        "temperature": f"{rng.random() * 6 + 2:.2f}",
        "humidity": f"{rng.random() * 20 + 40:.2f}",
        "doorStatus": "open" if rng.random() > 0.7 else "closed",
        "powerStatus": "on",
        "compressorStatus": "running" if rng.random() > 0.5 else "idle",
        "timestamp": timestamp.replace("+00:00", "Z"),
    }


class FridgeSimulator:
    """Publishes a reading for each device every ``interval`` seconds."""

    def __init__(
        self,
        client: Any,
        topic: str,
        devices: Sequence[str],
        interval: float = 5.0,
        qos: int = 1,
        rng: Optional[random.Random] = None,
        on_publish: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.client = client
        self.topic = topic
        self.devices = list(devices)
        self.interval = interval
        self.qos = qos
        self.rng = rng or random.Random()
        self.on_publish = on_publish
        self._stopped = Event()

    def publish_once(self) -> list[Dict[str, Any]]:
        published = []
        for device_id in self.devices:
            reading = generate_reading(device_id, rng=self.rng)
            info = self.client.publish(self.topic, json.dumps(reading), qos=self.qos)
            if info.rc != 0:
                logger.error("Publish failed (rc=%s)", info.rc, extra={"device_id": device_id})
                continue
            published.append(reading)
            if self.on_publish is not None:
                self.on_publish(reading)
        return published

    def run(self, iterations: Optional[int] = None) -> int:
        """Publish until stopped or ``iterations`` rounds are done."""
        rounds = 0
        while not self._stopped.is_set():
            self.publish_once()
            rounds += 1
            if iterations is not None and rounds >= iterations:
                break
            self._stopped.wait(self.interval)
        return rounds

    def stop(self) -> None:
        self._stopped.set()

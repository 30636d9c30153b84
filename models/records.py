"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class DoorStatus(str, Enum):
    open = "open"
    closed = "closed"


@dataclass(frozen=True, slots=True)
class Reading:
    """A single sensor reading decoded from a device message.

    ``timestamp`` is the producer-assigned ISO-8601 string. It is kept verbatim
    for display and never used for retention decisions.
    """

    device_id: str
    temperature: float
    door_status: DoorStatus
    timestamp: str
    humidity: Optional[float] = None
    name: Optional[str] = None

    def sink_fields(self) -> Dict[str, Any]:
        """Fields written to both the latest-value and the history sink."""
        fields = asdict(self)
        fields["door_status"] = self.door_status.value
        return fields

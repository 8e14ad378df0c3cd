"""Core data models used across decoder, session, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

PROBE_SERVICE_UUID = "a75cc7fc-c956-488f-ac2a-2dbc08b63a04"
TEMPERATURE_CHAR_UUID = "7edda774-045e-4bbf-909b-45d1991a2876"
BATTERY_CHAR_UUID = "2adb4877-68d8-4884-bd3c-d83853bf27b8"
PROBE_LOCAL_NAME = "MEATER"


class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "drop_oldest"
    BLOCK = "block"


@dataclass(frozen=True)
class DeviceIdentity:
    """Stable target for connection and reconnection.

    `address` pins one physical probe. Without it, the first device advertising
    `name` (or `service_uuid`) is used and its address is kept for reconnects.
    """

    address: str | None = None
    name: str | None = PROBE_LOCAL_NAME
    service_uuid: str | None = PROBE_SERVICE_UUID

    def describe(self) -> str:
        if self.address:
            return self.address
        return f"name={self.name!r}"


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str | None
    service_uuids: tuple[str, ...] = ()
    rssi: int | None = None


@dataclass(frozen=True)
class RawFields:
    tip: int
    ambient: int
    ambient_offset: int


@dataclass(frozen=True)
class Reading:
    tip_c: float
    ambient_c: float
    battery: float | None
    timestamp: datetime


@dataclass(frozen=True)
class BatteryLevel:
    fraction: float
    percent: int
    timestamp: datetime


@dataclass(frozen=True)
class DecodeFailed:
    reason: str
    characteristic: str


@dataclass(frozen=True)
class LinkStateChanged:
    state: LinkState
    reason: str | None = None
    retry_in_s: float | None = None


Event = Reading | BatteryLevel | DecodeFailed | LinkStateChanged


@dataclass(frozen=True)
class SessionConfig:
    address: str | None = None
    name: str | None = PROBE_LOCAL_NAME
    service_uuid: str | None = PROBE_SERVICE_UUID
    connect_timeout_s: float = 10.0
    scan_timeout_s: float = 10.0
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 30.0
    backoff_factor: float = 2.0
    queue_size: int = 16
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST

    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(address=self.address, name=self.name, service_uuid=self.service_uuid)

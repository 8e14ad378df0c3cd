"""Stable public API for building tooling on top of probectl.

This module is the supported integration surface for third-party callers
(display loops, loggers, exporters). Avoid importing from private/internal
modules unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

from probectl.core.config_loader import LoadedConfig, load_config
from probectl.core.device_match import match_score
from probectl.core.errors import (
    ConfigLoadError,
    ConfigValidationError,
    DecodeError,
    InvalidConfiguration,
    MalformedFrame,
    ProbectlError,
    TransportConnectError,
    TransportDisconnectedError,
    TransportError,
    TransportSubscribeError,
    TransportTimeoutError,
)
from probectl.core.events import EventStream, Subscription
from probectl.core.model import (
    BatteryLevel,
    DecodeFailed,
    DetectedDevice,
    DeviceIdentity,
    Event,
    LinkState,
    LinkStateChanged,
    OverflowPolicy,
    Reading,
    SessionConfig,
)
from probectl.core.session import Backoff, LinkSession
from probectl.transports.base import ProbeTransport
from probectl.transports.ble_gatt import BLEGATTTransport

__all__ = [
    "ProbectlError",
    "ConfigLoadError",
    "ConfigValidationError",
    "InvalidConfiguration",
    "DecodeError",
    "MalformedFrame",
    "TransportError",
    "TransportConnectError",
    "TransportSubscribeError",
    "TransportTimeoutError",
    "TransportDisconnectedError",
    "BatteryLevel",
    "DecodeFailed",
    "DetectedDevice",
    "DeviceIdentity",
    "Event",
    "LinkState",
    "LinkStateChanged",
    "OverflowPolicy",
    "Reading",
    "SessionConfig",
    "EventStream",
    "Subscription",
    "Backoff",
    "LinkSession",
    "ProbeTransport",
    "BLEGATTTransport",
    "LoadedConfig",
    "load_config",
    "ScanResult",
    "Client",
]


@dataclass(frozen=True)
class ScanResult:
    """A device seen during a scan and whether it looks like the configured probe."""

    device: DetectedDevice
    is_probe: bool


class Client:
    """Public client wrapping configuration, transport, and session wiring.

    A `Client` owns one transport, so it drives at most one probe session at
    a time.
    """

    def __init__(
        self,
        *,
        config: SessionConfig | None = None,
        transport: ProbeTransport | None = None,
    ) -> None:
        self.config = config or SessionConfig()
        self._transport = transport or BLEGATTTransport()

    async def scan(self, *, timeout_s: float | None = None) -> list[ScanResult]:
        identity = self.config.identity()
        devices = await self._transport.scan(timeout_s=timeout_s or self.config.scan_timeout_s)
        results = [ScanResult(device=d, is_probe=match_score(d, identity) > 0) for d in devices]
        return sorted(results, key=lambda r: (not r.is_probe, r.device.address))

    def session(self) -> LinkSession:
        return LinkSession(self.config.identity(), self._transport, config=self.config)

    async def events(self, *, readings: int | None = None) -> AsyncIterator[Event]:
        """Run a session and yield its events until it ends.

        With `readings`, the session is stopped once that many Reading events
        have been yielded. After that only link state changes come through,
        ending with the final FAILED/stopped transition.
        """
        session = self.session()
        subscription = session.events.subscribe()
        task = session.start()
        seen = 0
        try:
            async for event in subscription:
                if readings is not None and seen >= readings and not isinstance(event, LinkStateChanged):
                    continue
                yield event
                if isinstance(event, Reading):
                    seen += 1
                    if readings is not None and seen >= readings:
                        session.stop()
        finally:
            session.stop()
            await task

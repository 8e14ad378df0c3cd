"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from probectl.core.model import DetectedDevice, DeviceIdentity

NotificationHandler = Callable[[str, bytes], None]
DisconnectHandler = Callable[[], None]


class ProbeTransport(Protocol):
    async def scan(self, *, timeout_s: float = 10.0) -> list[DetectedDevice]:
        """Return every device seen advertising during the scan window."""

    async def discover(self, identity: DeviceIdentity, *, timeout_s: float) -> DetectedDevice | None:
        """Find the device matching identity, or None if it is not in range."""

    async def connect(
        self,
        device: DetectedDevice,
        *,
        timeout_s: float,
        on_disconnect: DisconnectHandler,
    ) -> None:
        """Open the link. on_disconnect fires when the device drops it."""

    async def subscribe(self, characteristic: str, handler: NotificationHandler) -> None:
        """Deliver every notification on characteristic to handler."""

    async def disconnect(self) -> None:
        """Release the link. Safe to call when not connected."""

"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from typing import Any

from probectl.core.device_match import best_device_for_identity, match_score
from probectl.core.errors import (
    TransportConnectError,
    TransportSubscribeError,
    TransportTimeoutError,
)
from probectl.core.model import DetectedDevice, DeviceIdentity
from probectl.transports.base import DisconnectHandler, NotificationHandler

LOGGER = logging.getLogger(__name__)


def _require_bleak() -> SimpleNamespace:
    try:
        from bleak import BleakClient, BleakScanner  # type: ignore
        from bleak.exc import BleakError  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise TransportConnectError(
            "BLE transport requires 'bleak'. Install dependency and retry."
        ) from exc
    return SimpleNamespace(BleakClient=BleakClient, BleakScanner=BleakScanner, BleakError=BleakError)


def _detected(device: Any, adv: Any) -> DetectedDevice:
    return DetectedDevice(
        address=device.address,
        name=getattr(adv, "local_name", None) or device.name,
        service_uuids=tuple(u.lower() for u in (getattr(adv, "service_uuids", None) or ())),
        rssi=getattr(adv, "rssi", None),
    )


class BLEGATTTransport:
    """Single-link transport backed by bleak. Not shared between sessions."""

    def __init__(self) -> None:
        self._client: Any = None
        self._ble_devices: dict[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        return self._client is not None and bool(self._client.is_connected)

    async def scan(self, *, timeout_s: float = 10.0) -> list[DetectedDevice]:
        bleak = _require_bleak()
        try:
            found = await bleak.BleakScanner.discover(timeout=timeout_s, return_adv=True)
        except Exception as exc:
            raise TransportConnectError(f"BLE scan failed: {exc}") from exc

        devices: list[DetectedDevice] = []
        for ble_device, adv in found.values():
            detected = _detected(ble_device, adv)
            self._ble_devices[detected.address] = ble_device
            devices.append(detected)
        LOGGER.debug("Scan completed: %d devices found", len(devices))
        return devices

    async def discover(self, identity: DeviceIdentity, *, timeout_s: float) -> DetectedDevice | None:
        bleak = _require_bleak()
        matches: dict[str, DetectedDevice] = {}

        def _filter(ble_device: Any, adv: Any) -> bool:
            detected = _detected(ble_device, adv)
            if match_score(detected, identity) == 0:
                return False
            matches[detected.address] = detected
            return True

        LOGGER.info("Looking for probe %s (timeout %.1fs)", identity.describe(), timeout_s)
        try:
            ble_device = await bleak.BleakScanner.find_device_by_filter(_filter, timeout=timeout_s)
        except Exception as exc:
            raise TransportConnectError(f"BLE discovery failed: {exc}") from exc
        if ble_device is None:
            return None

        self._ble_devices[ble_device.address] = ble_device
        detected = best_device_for_identity(matches.values(), identity)
        if detected is None:
            detected = DetectedDevice(address=ble_device.address, name=ble_device.name)
        return detected

    async def connect(
        self,
        device: DetectedDevice,
        *,
        timeout_s: float,
        on_disconnect: DisconnectHandler,
    ) -> None:
        bleak = _require_bleak()
        if self._client is not None:
            await self.disconnect()

        def _disconnected(_: Any) -> None:
            LOGGER.warning("BLE connection lost (callback) for %s", device.address)
            on_disconnect()

        target = self._ble_devices.get(device.address, device.address)
        client = bleak.BleakClient(target, disconnected_callback=_disconnected, timeout=timeout_s)
        try:
            await client.connect()
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE connect timed out for {device.address}") from exc
        except Exception as exc:
            raise TransportConnectError(f"BLE connect failed for {device.address}: {exc}") from exc

        if not client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {device.address}")
        self._client = client
        LOGGER.info("BLE connection established: %s", device.address)

    async def subscribe(self, characteristic: str, handler: NotificationHandler) -> None:
        if self._client is None:
            raise TransportSubscribeError(f"Cannot subscribe to {characteristic}: not connected")

        def _notify(_: Any, data: bytearray) -> None:
            handler(characteristic, bytes(data))

        try:
            await self._client.start_notify(characteristic, _notify)
        except Exception as exc:
            raise TransportSubscribeError(f"Subscribing to {characteristic} failed: {exc}") from exc
        LOGGER.debug("Subscribed to %s", characteristic)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as exc:
            LOGGER.debug("Ignoring error while releasing BLE link: %s", exc)

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from probectl.core.errors import (
    TransportConnectError,
    TransportSubscribeError,
    TransportTimeoutError,
)
from probectl.core.model import TEMPERATURE_CHAR_UUID, DetectedDevice, DeviceIdentity
from probectl.transports import ble_gatt
from probectl.transports.ble_gatt import BLEGATTTransport


class FakeBleakError(Exception):
    pass


def _ble(address: str, name: str | None) -> SimpleNamespace:
    return SimpleNamespace(address=address, name=name)


def _adv(local_name: str | None, uuids: list[str], rssi: int = -50) -> SimpleNamespace:
    return SimpleNamespace(local_name=local_name, service_uuids=uuids, rssi=rssi)


ADVERTISED = {
    "D0:D9:4F:11:22:33": (_ble("D0:D9:4F:11:22:33", "MEATER"), _adv("MEATER", ["A75CC7FC-C956-488F-AC2A-2DBC08B63A04"])),
    "11:22:33:44:55:66": (_ble("11:22:33:44:55:66", "Speaker"), _adv(None, [])),
}


class FakeScanner:
    fail = False

    @classmethod
    async def discover(cls, *, timeout: float, return_adv: bool):
        if cls.fail:
            raise FakeBleakError("adapter off")
        return ADVERTISED

    @classmethod
    async def find_device_by_filter(cls, filterfunc, *, timeout: float):
        if cls.fail:
            raise FakeBleakError("adapter off")
        for ble_device, adv in ADVERTISED.values():
            if filterfunc(ble_device, adv):
                return ble_device
        return None


class FakeClient:
    instances: list[FakeClient] = []
    connect_error: Exception | None = None
    notify_error: Exception | None = None

    def __init__(self, target, *, disconnected_callback, timeout: float) -> None:
        self.target = target
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.is_connected = False
        self.notify_handlers: dict[str, object] = {}
        self.disconnected = False
        FakeClient.instances.append(self)

    async def connect(self) -> None:
        if FakeClient.connect_error is not None:
            raise FakeClient.connect_error
        self.is_connected = True

    async def start_notify(self, characteristic: str, handler) -> None:
        if FakeClient.notify_error is not None:
            raise FakeClient.notify_error
        self.notify_handlers[characteristic] = handler

    async def disconnect(self) -> None:
        self.disconnected = True
        self.is_connected = False


@pytest.fixture(autouse=True)
def fake_bleak(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeScanner.fail = False
    FakeClient.instances = []
    FakeClient.connect_error = None
    FakeClient.notify_error = None
    namespace = SimpleNamespace(BleakClient=FakeClient, BleakScanner=FakeScanner, BleakError=FakeBleakError)
    monkeypatch.setattr(ble_gatt, "_require_bleak", lambda: namespace)


def test_scan_lists_devices_with_advertised_metadata() -> None:
    devices = asyncio.run(BLEGATTTransport().scan(timeout_s=1.0))
    probe = next(d for d in devices if d.address == "D0:D9:4F:11:22:33")
    assert probe.name == "MEATER"
    assert probe.service_uuids == ("a75cc7fc-c956-488f-ac2a-2dbc08b63a04",)
    assert probe.rssi == -50


def test_scan_failure_maps_to_transport_error() -> None:
    FakeScanner.fail = True
    with pytest.raises(TransportConnectError):
        asyncio.run(BLEGATTTransport().scan(timeout_s=1.0))


def test_discover_by_name_and_by_address() -> None:
    transport = BLEGATTTransport()
    by_name = asyncio.run(transport.discover(DeviceIdentity(), timeout_s=1.0))
    assert by_name is not None
    assert by_name.address == "D0:D9:4F:11:22:33"

    by_address = asyncio.run(
        transport.discover(DeviceIdentity(address="11:22:33:44:55:66"), timeout_s=1.0)
    )
    assert by_address is not None
    assert by_address.name == "Speaker"

    missing = asyncio.run(
        transport.discover(DeviceIdentity(address="99:99:99:99:99:99"), timeout_s=1.0)
    )
    assert missing is None


def test_connect_subscribe_and_forward_notifications() -> None:
    transport = BLEGATTTransport()
    received: list[tuple[str, bytes]] = []
    drops: list[bool] = []

    async def scenario() -> None:
        device = await transport.discover(DeviceIdentity(), timeout_s=1.0)
        assert device is not None
        await transport.connect(device, timeout_s=2.0, on_disconnect=lambda: drops.append(True))
        await transport.subscribe(TEMPERATURE_CHAR_UUID, lambda c, d: received.append((c, d)))
        client = FakeClient.instances[-1]
        client.notify_handlers[TEMPERATURE_CHAR_UUID](object(), bytearray(b"\x90\x01"))
        client.disconnected_callback(client)
        await transport.disconnect()
        await transport.disconnect()

    asyncio.run(scenario())
    client = FakeClient.instances[-1]
    # the scanned BLEDevice is reused instead of the bare address
    assert client.target is ADVERTISED["D0:D9:4F:11:22:33"][0]
    assert client.timeout == 2.0
    assert received == [(TEMPERATURE_CHAR_UUID, b"\x90\x01")]
    assert drops == [True]
    assert client.disconnected is True
    assert transport.is_connected is False


def test_connect_errors_are_mapped() -> None:
    device = DetectedDevice(address="D0:D9:4F:11:22:33", name="MEATER")
    transport = BLEGATTTransport()

    FakeClient.connect_error = FakeBleakError("refused")
    with pytest.raises(TransportConnectError):
        asyncio.run(transport.connect(device, timeout_s=1.0, on_disconnect=lambda: None))

    FakeClient.connect_error = asyncio.TimeoutError()
    with pytest.raises(TransportTimeoutError):
        asyncio.run(transport.connect(device, timeout_s=1.0, on_disconnect=lambda: None))


def test_subscribe_errors_are_mapped() -> None:
    device = DetectedDevice(address="D0:D9:4F:11:22:33", name="MEATER")
    transport = BLEGATTTransport()

    with pytest.raises(TransportSubscribeError):
        asyncio.run(transport.subscribe(TEMPERATURE_CHAR_UUID, lambda c, d: None))

    async def scenario() -> None:
        await transport.connect(device, timeout_s=1.0, on_disconnect=lambda: None)
        FakeClient.notify_error = FakeBleakError("not permitted")
        await transport.subscribe(TEMPERATURE_CHAR_UUID, lambda c, d: None)

    with pytest.raises(TransportSubscribeError):
        asyncio.run(scenario())


def test_non_bleak_errors_are_mapped() -> None:
    device = DetectedDevice(address="D0:D9:4F:11:22:33", name="MEATER")
    transport = BLEGATTTransport()

    FakeClient.connect_error = OSError("org.bluez.Error.Failed: le-connection-abort-by-local")
    with pytest.raises(TransportConnectError):
        asyncio.run(transport.connect(device, timeout_s=1.0, on_disconnect=lambda: None))

    FakeClient.connect_error = None

    async def scenario() -> None:
        await transport.connect(device, timeout_s=1.0, on_disconnect=lambda: None)
        FakeClient.notify_error = EOFError()
        await transport.subscribe(TEMPERATURE_CHAR_UUID, lambda c, d: None)

    with pytest.raises(TransportSubscribeError):
        asyncio.run(scenario())


def test_scanner_os_errors_are_mapped(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _dbus_gone(*_args, **_kwargs):
        raise OSError("[Errno 2] No such file or directory: '/var/run/dbus/system_bus_socket'")

    monkeypatch.setattr(FakeScanner, "discover", _dbus_gone)
    monkeypatch.setattr(FakeScanner, "find_device_by_filter", _dbus_gone)
    transport = BLEGATTTransport()

    with pytest.raises(TransportConnectError):
        asyncio.run(transport.scan(timeout_s=1.0))
    with pytest.raises(TransportConnectError):
        asyncio.run(transport.discover(DeviceIdentity(), timeout_s=1.0))


def test_disconnect_swallows_backend_errors() -> None:
    device = DetectedDevice(address="D0:D9:4F:11:22:33", name="MEATER")
    transport = BLEGATTTransport()

    async def scenario() -> None:
        await transport.connect(device, timeout_s=1.0, on_disconnect=lambda: None)

        async def _broken() -> None:
            raise EOFError()

        FakeClient.instances[-1].disconnect = _broken
        await transport.disconnect()

    asyncio.run(scenario())
    assert transport.is_connected is False

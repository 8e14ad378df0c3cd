"""Device-to-identity matching logic."""

from __future__ import annotations

import re
from collections.abc import Iterable

from probectl.core.errors import InvalidConfiguration
from probectl.core.model import DetectedDevice, DeviceIdentity

_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$", re.IGNORECASE)
# CoreBluetooth on macOS exposes peripherals by UUID instead of MAC
_PLATFORM_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def validate_identity(identity: DeviceIdentity) -> DeviceIdentity:
    if not identity.address and not identity.name and not identity.service_uuid:
        raise InvalidConfiguration("Device identity needs an address, a name or a service UUID")
    if identity.address is not None:
        address = identity.address.strip()
        if not (_MAC_RE.match(address) or _PLATFORM_UUID_RE.match(address)):
            raise InvalidConfiguration(
                f"Device address '{identity.address}' is neither a MAC address nor a platform UUID"
            )
    return identity


def _address_match(device: DetectedDevice, identity: DeviceIdentity) -> bool:
    return identity.address is not None and device.address.upper() == identity.address.strip().upper()


def _name_match(device: DetectedDevice, identity: DeviceIdentity) -> bool:
    return identity.name is not None and device.name == identity.name


def _service_match(device: DetectedDevice, identity: DeviceIdentity) -> bool:
    if identity.service_uuid is None:
        return False
    wanted = identity.service_uuid.lower()
    return any(uuid.lower() == wanted for uuid in device.service_uuids)


def match_score(device: DetectedDevice, identity: DeviceIdentity) -> int:
    if _address_match(device, identity):
        return 3
    if identity.address is not None:
        return 0
    if _name_match(device, identity):
        return 2
    if _service_match(device, identity):
        return 1
    return 0


def best_device_for_identity(
    devices: Iterable[DetectedDevice],
    identity: DeviceIdentity,
) -> DetectedDevice | None:
    best: DetectedDevice | None = None
    best_score = 0
    for device in devices:
        score = match_score(device, identity)
        if score > best_score:
            best = device
            best_score = score
    return best

"""Fixed-frame decoding of probe notification payloads."""

from __future__ import annotations

import struct
from datetime import datetime, timezone

from probectl.core import calibration
from probectl.core.errors import MalformedFrame
from probectl.core.model import BatteryLevel, RawFields, Reading

TEMPERATURE_FRAME_SIZE = 8
BATTERY_FRAME_SIZE = 2

# tip, raw ambient, ambient offset, reserved; all little-endian u16
_TEMPERATURE_STRUCT = struct.Struct("<HHHH")
_BATTERY_STRUCT = struct.Struct("<H")


def _check_length(raw: bytes, expected: int, *, kind: str) -> None:
    if len(raw) != expected:
        raise MalformedFrame(
            f"{kind} frame must be {expected} bytes, got {len(raw)}"
        )


def extract_fields(raw: bytes) -> RawFields:
    _check_length(raw, TEMPERATURE_FRAME_SIZE, kind="temperature")
    tip, ambient, ambient_offset, _reserved = _TEMPERATURE_STRUCT.unpack(bytes(raw))
    return RawFields(tip=tip, ambient=ambient, ambient_offset=ambient_offset)


def decode(
    raw: bytes,
    *,
    battery: float | None = None,
    now: datetime | None = None,
) -> Reading:
    """Decode one temperature frame into a calibrated Reading.

    `battery` is the latest battery fraction known to the caller; the
    temperature frame does not carry it. Raises MalformedFrame on a bad length.
    """
    fields = extract_fields(raw)
    delta = calibration.ambient_delta(fields.ambient, fields.ambient_offset)
    return Reading(
        tip_c=calibration.tip_temperature(fields.tip),
        ambient_c=calibration.ambient_temperature(fields.tip, delta),
        battery=battery,
        timestamp=now or datetime.now(timezone.utc),
    )


def decode_battery(raw: bytes, *, now: datetime | None = None) -> BatteryLevel:
    _check_length(raw, BATTERY_FRAME_SIZE, kind="battery")
    (value,) = _BATTERY_STRUCT.unpack(bytes(raw))
    return BatteryLevel(
        fraction=calibration.battery_fraction(value),
        percent=calibration.battery_percent(value),
        timestamp=now or datetime.now(timezone.utc),
    )

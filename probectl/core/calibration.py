"""Raw sensor value calibration for MEATER-class probes.

The constants below come from community reverse-engineering of the MEATER BLE
protocol (temperature characteristic 7edda774..., battery characteristic
2adb4877...). They are empirical and not derivable from first principles;
update them here if better-calibrated values turn up.
"""

from __future__ import annotations

# Temperatures are reported in 1/16 degC with a half-LSB offset.
TEMPERATURE_SCALE = 16
TEMPERATURE_OFFSET = 8

# Ambient reconstruction: the ambient sensor saturates, so true ambient is the
# tip value plus a scaled delta between the raw ambient and its offset field.
AMBIENT_OFFSET_CEILING = 48
AMBIENT_GAIN_NUMERATOR = 16 * 589
AMBIENT_GAIN_DENOMINATOR = 1487

# Raw battery is reported in tens of percent.
BATTERY_RAW_EMPTY = 0
BATTERY_RAW_FULL = 10

UINT16_MAX = 0xFFFF


def _check_u16(value: int, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} must be an integer, got {value!r}")
    if value < 0 or value > UINT16_MAX:
        raise ValueError(f"{field} {value} does not fit an unsigned 16-bit field")
    return value


def _to_celsius(raw: float) -> float:
    return (raw + TEMPERATURE_OFFSET) / TEMPERATURE_SCALE


def tip_temperature(raw_tip: int) -> float:
    return _to_celsius(_check_u16(raw_tip, field="raw_tip"))


def ambient_delta(raw_ambient: int, raw_offset: int) -> int:
    """Signed difference between the raw ambient reading and its capped offset."""
    _check_u16(raw_ambient, field="raw_ambient")
    _check_u16(raw_offset, field="raw_offset")
    return raw_ambient - min(AMBIENT_OFFSET_CEILING, raw_offset)


def ambient_contribution(raw_ambient_delta: int) -> float:
    """Raw-unit amount added to the tip reading; zero at or below the breakpoint."""
    if isinstance(raw_ambient_delta, bool) or not isinstance(raw_ambient_delta, int):
        raise ValueError(f"raw_ambient_delta must be an integer, got {raw_ambient_delta!r}")
    if abs(raw_ambient_delta) > UINT16_MAX:
        raise ValueError(f"raw_ambient_delta {raw_ambient_delta} is outside the 16-bit range")
    if raw_ambient_delta <= 0:
        return 0.0
    return max(0.0, raw_ambient_delta * AMBIENT_GAIN_NUMERATOR / AMBIENT_GAIN_DENOMINATOR)


def ambient_temperature(raw_tip: int, raw_ambient_delta: int) -> float:
    raw_tip = _check_u16(raw_tip, field="raw_tip")
    return _to_celsius(raw_tip + ambient_contribution(raw_ambient_delta))


def battery_fraction(raw_battery: int) -> float:
    raw_battery = _check_u16(raw_battery, field="raw_battery")
    if raw_battery <= BATTERY_RAW_EMPTY:
        return 0.0
    if raw_battery >= BATTERY_RAW_FULL:
        return 1.0
    return (raw_battery - BATTERY_RAW_EMPTY) / (BATTERY_RAW_FULL - BATTERY_RAW_EMPTY)


def battery_percent(raw_battery: int) -> int:
    return round(battery_fraction(raw_battery) * 100)

from __future__ import annotations

import math
import random
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from probectl.core.decoder import (
    BATTERY_FRAME_SIZE,
    TEMPERATURE_FRAME_SIZE,
    decode,
    decode_battery,
    extract_fields,
)
from probectl.core.errors import MalformedFrame

from fakes import REFERENCE_BATTERY_FRAME, REFERENCE_TEMPERATURE_FRAME


def test_extract_fields_little_endian() -> None:
    fields = extract_fields(REFERENCE_TEMPERATURE_FRAME)
    assert fields.tip == 400
    assert fields.ambient == 100
    assert fields.ambient_offset == 20


def test_decode_reference_frame() -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    reading = decode(REFERENCE_TEMPERATURE_FRAME, battery=0.7, now=now)
    assert reading.tip_c == pytest.approx(25.5, abs=0.1)
    assert reading.ambient_c == pytest.approx(57.19, abs=0.1)
    assert reading.battery == pytest.approx(0.7, abs=0.01)
    assert reading.timestamp == now


def test_decode_battery_reference_frame() -> None:
    level = decode_battery(REFERENCE_BATTERY_FRAME)
    assert level.fraction == pytest.approx(0.7, abs=0.01)
    assert level.percent == 70
    assert level.timestamp.tzinfo is not None


@pytest.mark.parametrize("length", [0, 1, 7, 9, 20])
def test_wrong_length_is_malformed(length: int) -> None:
    with pytest.raises(MalformedFrame):
        decode(bytes(length))


@pytest.mark.parametrize("length", [0, 1, 3, 8])
def test_wrong_battery_length_is_malformed(length: int) -> None:
    with pytest.raises(MalformedFrame):
        decode_battery(bytes(length))


def test_malformed_frame_skips_field_extraction(monkeypatch: pytest.MonkeyPatch) -> None:
    from probectl.core import decoder

    def _boom(*_args):
        raise AssertionError("unpack must not run on a malformed frame")

    monkeypatch.setattr(decoder, "_TEMPERATURE_STRUCT", type("S", (), {"unpack": staticmethod(_boom)})())
    with pytest.raises(MalformedFrame):
        decoder.decode(bytes(TEMPERATURE_FRAME_SIZE - 1))


def test_any_correct_length_frame_decodes_to_finite_values() -> None:
    rng = random.Random(1234)
    frames = [bytes(TEMPERATURE_FRAME_SIZE), b"\xff" * TEMPERATURE_FRAME_SIZE]
    frames += [rng.randbytes(TEMPERATURE_FRAME_SIZE) for _ in range(500)]
    for frame in frames:
        reading = decode(frame)
        assert math.isfinite(reading.tip_c)
        assert math.isfinite(reading.ambient_c)
        assert reading.ambient_c >= reading.tip_c
        assert reading.battery is None

    for _ in range(200):
        level = decode_battery(rng.randbytes(BATTERY_FRAME_SIZE))
        assert 0.0 <= level.fraction <= 1.0
        assert 0 <= level.percent <= 100
        reading = decode(rng.randbytes(TEMPERATURE_FRAME_SIZE), battery=level.fraction)
        assert reading.battery == level.fraction
        assert 0.0 <= reading.battery <= 1.0


def test_decode_is_idempotent_except_timestamp() -> None:
    first = decode(REFERENCE_TEMPERATURE_FRAME, battery=0.5)
    second = decode(REFERENCE_TEMPERATURE_FRAME, battery=0.5)
    assert replace(second, timestamp=first.timestamp) == first


def test_decode_accepts_bytearray() -> None:
    reading = decode(bytearray(REFERENCE_TEMPERATURE_FRAME))
    assert reading.tip_c == 25.5
    assert reading.battery is None

from __future__ import annotations

from datetime import timedelta

import numpy as np
import pytest

from cgmblock.libre.block import RawBlock, SensorState
from cgmblock.libre.calibration import CalibrationParameters
from cgmblock.libre.decoder import LIBRE_MULTIPLIER, decode, most_recent_history_age


def _params(serial: str = "SN1") -> CalibrationParameters:
    return CalibrationParameters(
        slope_slope=0.0,
        slope_offset=0.0,
        offset_slope=0.1,
        offset_offset=5.0,
        extra_slope=1.0,
        extra_offset=0.0,
        is_valid_for_footer_with_reverse_crcs=1,
        serial_number=serial,
    )


def _strictly_decreasing(readings) -> bool:
    stamps = [reading.timestamp for reading in readings]
    return all(newer > older for newer, older in zip(stamps, stamps[1:]))


@pytest.mark.parametrize(
    "age, trend_index, history_index",
    [(0, 0, 0), (2, 3, 0), (16, 15, 1), (120, 0, 7), (1440, 9, 31), (20160, 255, 255), (65535, 4, 12)],
)
def test_decode_bounds_and_ordering(make_block, reference_time, age, trend_index, history_index):
    block = RawBlock(make_block(age=age, trend_index=trend_index, history_index=history_index))
    decoded = decode(block, reference_time=reference_time)
    assert len(decoded.trend) <= 16
    assert len(decoded.history) <= 32
    assert _strictly_decreasing(decoded.trend)
    assert _strictly_decreasing(decoded.history)


def test_newest_trend_reading_is_at_reference_time(make_block, reference_time):
    decoded = decode(RawBlock(make_block(age=120)), reference_time=reference_time)
    assert decoded.sensor_state is SensorState.READY
    assert decoded.sensor_age_minutes == 120
    assert decoded.trend[0].timestamp == reference_time
    assert decoded.trend[-1].timestamp == reference_time - timedelta(minutes=15)
    # trend index 0: the newest record sits in the last slot
    assert decoded.trend[0].raw_value == pytest.approx(1015 * LIBRE_MULTIPLIER)
    assert decoded.trend[-1].raw_value == pytest.approx(1000 * LIBRE_MULTIPLIER)


def test_history_overlapping_trend_is_dropped(make_block, reference_time):
    # age 120 with history index 7: the newest history record belongs to minute 105,
    # which is exactly the oldest trend minute
    block = RawBlock(make_block(age=120, history_index=7))
    decoded = decode(block, reference_time=reference_time)
    oldest_trend = decoded.trend[-1].timestamp
    assert all(reading.timestamp < oldest_trend for reading in decoded.history)
    assert len(decoded.history) == 7
    assert decoded.history[0].timestamp == oldest_trend - timedelta(minutes=15)
    assert decoded.history[0].raw_value == pytest.approx(2005 * LIBRE_MULTIPLIER)
    assert _strictly_decreasing(decoded.readings)


def test_zero_codes_are_skipped_without_calibration(make_block, reference_time):
    codes = [1000 + slot for slot in range(16)]
    codes[15] = 0
    decoded = decode(RawBlock(make_block(trend_codes=codes)), reference_time=reference_time)
    assert len(decoded.trend) == 15
    assert decoded.trend[0].timestamp == reference_time - timedelta(minutes=1)


def test_calibrated_decode_sets_both_values(make_block, reference_time):
    codes = [1000 + slot for slot in range(16)]
    codes[15] = 0
    decoded = decode(RawBlock(make_block(trend_codes=codes)), _params(), reference_time)
    assert len(decoded.trend) == 16
    assert decoded.trend[0].calibrated_value == pytest.approx(5.0)
    assert decoded.trend[1].calibrated_value == pytest.approx(0.1 * 1014 + 5.0)
    assert decoded.trend[1].raw_value == pytest.approx(1014 * LIBRE_MULTIPLIER)
    assert decoded.trend[1].value == decoded.trend[1].calibrated_value


def test_temperature_enters_calibrated_value(make_block, reference_time):
    params = CalibrationParameters(
        slope_slope=0.00001,
        slope_offset=-0.002,
        offset_slope=0.1,
        offset_offset=10.0,
        extra_slope=2.0,
        extra_offset=1.0,
        is_valid_for_footer_with_reverse_crcs=1,
        serial_number="SN1",
    )
    decoded = decode(RawBlock(make_block(temperature=7000)), params, reference_time)
    glucose, temperature = 1015, 7000
    slope = 0.00001 * temperature + 0.1
    offset = -0.002 * temperature + 10.0
    assert np.isclose(decoded.trend[0].calibrated_value, (slope * glucose + offset) * 2.0 + 1.0)


def test_uncalibrated_ramp_is_proportional_to_code(make_block, reference_time):
    decoded = decode(RawBlock(make_block()), reference_time=reference_time)
    codes = np.array([1015 - i for i in range(16)], dtype=float)
    values = np.array([reading.raw_value for reading in decoded.trend])
    assert np.allclose(values, codes * LIBRE_MULTIPLIER)
    assert all(reading.calibrated_value is None for reading in decoded.trend)


@pytest.mark.parametrize(
    "age, history_index, expected",
    [(120, 7, 15), (120, 6, 0), (18, 1, 3), (17, 1, 2), (0, 0, 0), (2, 0, 2)],
)
def test_most_recent_history_age(age, history_index, expected):
    assert most_recent_history_age(age, history_index) == expected

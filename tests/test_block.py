from __future__ import annotations

import pytest

from cgmblock.libre.block import (
    BODY_SECTION,
    RawBlock,
    SensorState,
    SensorType,
    classify_sensor,
    crc16_ccitt,
)


def test_block_length_is_enforced(make_block):
    with pytest.raises(ValueError):
        RawBlock(b"\x00" * 343)
    with pytest.raises(ValueError):
        RawBlock(make_block() + b"\x00")


def test_block_fields(make_block):
    block = RawBlock(make_block(state=0x03, age=4321, trend_index=5, history_index=17))
    assert block.sensor_state is SensorState.READY
    assert block.sensor_age_minutes == 4321
    assert block.trend_index == 5
    assert block.history_index == 17
    assert block.sample(28, 0)[:2] == (1000).to_bytes(2, "little")


def test_section_crcs(make_block):
    data = bytearray(make_block())
    block = RawBlock(bytes(data))
    assert block.has_valid_crcs()

    data[BODY_SECTION[0] + 10] ^= 0x01
    damaged = RawBlock(bytes(data))
    assert damaged.crc_report() == {"header": True, "body": False, "footer": True}
    assert not damaged.has_valid_crcs()


def test_crc16_ccitt_check_value():
    assert crc16_ccitt(b"123456789") == 0x29B1


@pytest.mark.parametrize(
    "code, state",
    [
        (0x01, SensorState.NOT_YET_STARTED),
        (0x02, SensorState.STARTING),
        (0x03, SensorState.READY),
        (0x04, SensorState.EXPIRED),
        (0x05, SensorState.SHUTDOWN),
        (0x06, SensorState.FAILURE),
        (0x00, SensorState.UNKNOWN),
        (0x7F, SensorState.UNKNOWN),
    ],
)
def test_sensor_state_codes(code, state):
    assert SensorState.from_byte(code) is state


def test_only_ready_and_expired_are_operational():
    operational = {state for state in SensorState if state.is_operational}
    assert operational == {SensorState.READY, SensorState.EXPIRED}


@pytest.mark.parametrize(
    "vendor_info, expected",
    [
        (None, SensorType.LIBRE1),
        ("DF0000080000", SensorType.LIBRE1),
        ("a2081000", SensorType.LIBRE1_A2),
        ("9D083001", SensorType.LIBRE2),
        ("E5003000", SensorType.LIBRE_US),
        ("70000000", SensorType.LIBRE_PRO_H),
        ("1234", None),
        ("D", None),
    ],
)
def test_classify_sensor(vendor_info, expected):
    assert classify_sensor(vendor_info) is expected


def test_base_format_variants():
    assert SensorType.LIBRE1.uses_base_format
    assert SensorType.LIBRE_PRO_H.uses_base_format
    assert not SensorType.LIBRE2.uses_base_format
    assert not SensorType.LIBRE_US.uses_base_format
    assert SensorType.LIBRE1_A2.rejects_zero_slope
    assert not SensorType.LIBRE_PRO_H.rejects_zero_slope

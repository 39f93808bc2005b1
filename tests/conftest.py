from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

import pytest

from cgmblock.libre.block import (
    BLOCK_SIZE,
    BODY_SECTION,
    FOOTER_SECTION,
    HEADER_SECTION,
    HISTORY_INDEX_OFFSET,
    HISTORY_TABLE_OFFSET,
    SAMPLE_SIZE,
    SENSOR_AGE_OFFSET,
    SENSOR_STATE_OFFSET,
    TREND_INDEX_OFFSET,
    TREND_TABLE_OFFSET,
    reverse_crc16,
)
from cgmblock.libre.calibration import FOOTER_WORDS_OFFSET

REFERENCE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

# factory words that keep the thermistor model defined over the derivation grid
FACTORY_WORDS: Dict[str, int] = {"i3": 10, "i4": 5000, "i5_raw": 1000, "i6_raw": 3000}


def write_bits(data: bytearray, byte_offset: int, bit_offset: int, bit_count: int, value: int) -> None:
    for i in range(bit_count):
        position = byte_offset * 8 + bit_offset + i
        mask = 1 << (position % 8)
        if (value >> i) & 1:
            data[position // 8] |= mask
        else:
            data[position // 8] &= ~mask & 0xFF


def write_sample(data: bytearray, table_offset: int, slot: int, code: int, temperature: int = 0) -> None:
    start = table_offset + slot * SAMPLE_SIZE
    data[start] = code & 0xFF
    data[start + 1] = (code >> 8) & 0x1F
    data[start + 3] = temperature & 0xFF
    data[start + 4] = (temperature >> 8) & 0x3F


def seal(data: bytearray) -> None:
    for start, end in (HEADER_SECTION, BODY_SECTION, FOOTER_SECTION):
        crc = reverse_crc16(bytes(data[start + 2 : end]))
        data[start] = crc >> 8
        data[start + 1] = crc & 0xFF


def build_block(
    *,
    state: int = 0x03,
    age: int = 120,
    trend_index: int = 0,
    history_index: int = 7,
    trend_codes: Optional[Sequence[int]] = None,
    history_codes: Optional[Sequence[int]] = None,
    temperature: int = 0,
    factory_words: bool = False,
) -> bytes:
    """
    Synthetic memory image. Codes are given per physical slot; by default the
    trend slots hold 1000 + slot and the history slots 2000 + slot.
    """
    data = bytearray(BLOCK_SIZE)
    data[SENSOR_STATE_OFFSET] = state
    data[TREND_INDEX_OFFSET] = trend_index
    data[HISTORY_INDEX_OFFSET] = history_index
    data[SENSOR_AGE_OFFSET] = age & 0xFF
    data[SENSOR_AGE_OFFSET + 1] = (age >> 8) & 0xFF
    trend_codes = trend_codes if trend_codes is not None else [1000 + slot for slot in range(16)]
    history_codes = history_codes if history_codes is not None else [2000 + slot for slot in range(32)]
    for slot, code in enumerate(trend_codes):
        write_sample(data, TREND_TABLE_OFFSET, slot, code, temperature)
    for slot, code in enumerate(history_codes):
        write_sample(data, HISTORY_TABLE_OFFSET, slot, code, temperature)
    if factory_words:
        write_bits(data, FOOTER_WORDS_OFFSET, 0, 8, FACTORY_WORDS["i3"])
        write_bits(data, FOOTER_WORDS_OFFSET, 8, 14, FACTORY_WORDS["i4"])
        write_bits(data, FOOTER_WORDS_OFFSET, 40, 12, FACTORY_WORDS["i5_raw"])
        write_bits(data, FOOTER_WORDS_OFFSET, 52, 12, FACTORY_WORDS["i6_raw"])
    seal(data)
    return bytes(data)


@pytest.fixture
def reference_time() -> datetime:
    return REFERENCE_TIME


@pytest.fixture
def make_block():
    return build_block

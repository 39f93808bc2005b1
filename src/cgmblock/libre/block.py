from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


BLOCK_SIZE = 344
SAMPLE_SIZE = 6

SENSOR_STATE_OFFSET = 4
TREND_INDEX_OFFSET = 26
HISTORY_INDEX_OFFSET = 27
TREND_TABLE_OFFSET = 28
HISTORY_TABLE_OFFSET = 124
SENSOR_AGE_OFFSET = 316

TREND_SLOTS = 16
HISTORY_SLOTS = 32

# [start, end) of each CRC protected section, CRC held in the first two bytes
HEADER_SECTION: Tuple[int, int] = (0, 24)
BODY_SECTION: Tuple[int, int] = (24, 320)
FOOTER_SECTION: Tuple[int, int] = (320, 344)


class SensorState(str, enum.Enum):
    NOT_YET_STARTED = "notYetStarted"
    STARTING = "starting"
    READY = "ready"
    EXPIRED = "expired"
    SHUTDOWN = "shutdown"
    FAILURE = "failure"
    UNKNOWN = "unknown"

    @classmethod
    def from_byte(cls, value: int) -> "SensorState":
        return _STATE_CODES.get(value, cls.UNKNOWN)

    @property
    def is_operational(self) -> bool:
        """Only a ready or expired sensor produces usable readings."""
        return self in (SensorState.READY, SensorState.EXPIRED)


_STATE_CODES: Dict[int, SensorState] = {
    0x01: SensorState.NOT_YET_STARTED,
    0x02: SensorState.STARTING,
    0x03: SensorState.READY,
    0x04: SensorState.EXPIRED,
    0x05: SensorState.SHUTDOWN,
    0x06: SensorState.FAILURE,
}


class SensorType(str, enum.Enum):
    LIBRE1 = "libre1"
    LIBRE1_A2 = "libre1A2"
    LIBRE2 = "libre2"
    LIBRE_US = "libreUS"
    LIBRE_PRO_H = "libreProH"

    @property
    def uses_base_format(self) -> bool:
        return self in (SensorType.LIBRE1, SensorType.LIBRE1_A2, SensorType.LIBRE_PRO_H)

    @property
    def rejects_zero_slope(self) -> bool:
        # a stored slope_slope of 0 is known to be bogus for these two
        return self in (SensorType.LIBRE1, SensorType.LIBRE1_A2)


_VENDOR_PREFIXES: Dict[str, SensorType] = {
    "DF": SensorType.LIBRE1,
    "A2": SensorType.LIBRE1_A2,
    "9D": SensorType.LIBRE2,
    "E5": SensorType.LIBRE_US,
    "70": SensorType.LIBRE_PRO_H,
}


def classify_sensor(vendor_info: Optional[str]) -> Optional[SensorType]:
    """
    Map the hex vendor info (patch info) string to a sensor variant.
    Readers that never report vendor info only talk to first generation sensors.
    """
    if vendor_info is None:
        return SensorType.LIBRE1
    if len(vendor_info) < 2:
        return None
    return _VENDOR_PREFIXES.get(vendor_info[:2].upper())


def crc16_ccitt(data: bytes, poly: int = 0x1021, init: int = 0xFFFF) -> int:
    crc = init
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ poly
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def _reverse_bits(value: int, width: int) -> int:
    result = 0
    for _ in range(width):
        result = (result << 1) | (value & 1)
        value >>= 1
    return result


def reverse_crc16(data: bytes) -> int:
    """CRC-16/CCITT over bit-reversed bytes, the checksum used by the sensor memory sections."""
    return crc16_ccitt(bytes(_reverse_bits(byte, 8) for byte in data))


@dataclass(frozen=True)
class RawBlock:
    """
    Immutable 344 byte memory image read from the sensor.
    All accessors use fixed offsets; the length check in the constructor is what
    keeps every one of them in range.
    """

    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != BLOCK_SIZE:
            raise ValueError(f"Sensor block must be {BLOCK_SIZE} bytes, got {len(self.data)}")
        object.__setattr__(self, "data", bytes(self.data))

    @property
    def sensor_state(self) -> SensorState:
        return SensorState.from_byte(self.data[SENSOR_STATE_OFFSET])

    @property
    def sensor_age_minutes(self) -> int:
        return struct.unpack_from("<H", self.data, SENSOR_AGE_OFFSET)[0]

    @property
    def trend_index(self) -> int:
        return self.data[TREND_INDEX_OFFSET]

    @property
    def history_index(self) -> int:
        return self.data[HISTORY_INDEX_OFFSET]

    def sample(self, table_offset: int, slot: int) -> bytes:
        start = table_offset + slot * SAMPLE_SIZE
        return self.data[start : start + SAMPLE_SIZE]

    def section_crc_valid(self, section: Tuple[int, int]) -> bool:
        start, end = section
        enclosed = (self.data[start] << 8) | self.data[start + 1]
        return reverse_crc16(self.data[start + 2 : end]) == enclosed

    def crc_report(self) -> Dict[str, bool]:
        return {
            "header": self.section_crc_valid(HEADER_SECTION),
            "body": self.section_crc_valid(BODY_SECTION),
            "footer": self.section_crc_valid(FOOTER_SECTION),
        }

    def has_valid_crcs(self) -> bool:
        return all(self.crc_report().values())

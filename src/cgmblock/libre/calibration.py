from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol

from .block import FOOTER_SECTION, RawBlock, SensorType
from .client import CalibrationSlope

logger = logging.getLogger(__name__)

# factory calibration words are packed bit-wise at these byte offsets
HEADER_WORDS_OFFSET = 0x0002
FOOTER_WORDS_OFFSET = 0x0150

# two-point grid used when deriving parameters from the factory words
GLUCOSE_LOWER_THRESHOLD = 1000
GLUCOSE_UPPER_THRESHOLD = 3000
TEMPERATURE_LOWER_THRESHOLD = 6000
TEMPERATURE_UPPER_THRESHOLD = 9000

THERMISTOR_SCALE = 72500.0
THERMISTOR_OFFSET = 1000.0
STEINHART_A = 0.0009180023
STEINHART_B = 0.0001964561
STEINHART_C = 0.0000001007
GLUCOSE_SPAN = 65.0
TEMPERATURE_BASE = 1.045
TEMPERATURE_REFERENCE_C = 32.5


@dataclass(frozen=True)
class CalibrationParameters:
    slope_slope: float
    slope_offset: float
    offset_slope: float
    offset_offset: float
    extra_slope: float
    extra_offset: float
    is_valid_for_footer_with_reverse_crcs: int
    serial_number: str

    def glucose(self, raw_glucose: int, raw_temperature: int) -> float:
        slope = self.slope_slope * raw_temperature + self.offset_slope
        offset = self.slope_offset * raw_temperature + self.offset_offset
        return (slope * raw_glucose + offset) * self.extra_slope + self.extra_offset

    def glucose_from_sample(self, sample: bytes) -> float:
        """Temperature compensated glucose for one 6 byte trend/history record."""
        raw_glucose = ((sample[1] & 0x1F) << 8) | sample[0]
        raw_temperature = ((sample[4] & 0x3F) << 8) | sample[3]
        return self.glucose(raw_glucose, raw_temperature)

    def usable_for(self, sensor_type: SensorType) -> bool:
        return not (sensor_type.rejects_zero_slope and self.slope_slope == 0)

    def to_mapping(self) -> Dict[str, object]:
        return asdict(self)

    @staticmethod
    def from_mapping(data: Dict[str, object]) -> "CalibrationParameters":
        try:
            return CalibrationParameters(
                slope_slope=float(data["slope_slope"]),
                slope_offset=float(data["slope_offset"]),
                offset_slope=float(data["offset_slope"]),
                offset_offset=float(data["offset_offset"]),
                extra_slope=float(data.get("extra_slope", 1.0)),
                extra_offset=float(data.get("extra_offset", 0.0)),
                is_valid_for_footer_with_reverse_crcs=int(
                    data.get("is_valid_for_footer_with_reverse_crcs", 1)
                ),
                serial_number=str(data["serial_number"]),
            )
        except KeyError as exc:
            raise ValueError(f"Calibration parameters missing field {exc}") from exc
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid calibration parameters: {exc}") from exc


def parameters_from_slope(slope: CalibrationSlope, serial_number: str) -> CalibrationParameters:
    validity = slope.is_valid_for_footer_with_reverse_crcs
    return CalibrationParameters(
        slope_slope=slope.slope_slope or 0.0,
        slope_offset=slope.slope_offset or 0.0,
        offset_slope=slope.offset_slope or 0.0,
        offset_offset=slope.offset_offset or 0.0,
        extra_slope=1.0,
        extra_offset=0.0,
        is_valid_for_footer_with_reverse_crcs=int(validity) if validity is not None else 1,
        serial_number=serial_number,
    )


def read_bits(data: bytes, byte_offset: int, bit_offset: int, bit_count: int) -> int:
    """Read `bit_count` bits, least significant first, starting at a bit position."""
    result = 0
    for i in range(bit_count):
        position = byte_offset * 8 + bit_offset + i
        if (data[position // 8] >> (position % 8)) & 1:
            result |= 1 << i
    return result


@dataclass(frozen=True)
class CalibrationInfo:
    i1: int
    i2: int
    i3: int
    i4: int
    i5: int
    i6: int

    @staticmethod
    def from_block(block: RawBlock) -> "CalibrationInfo":
        data = block.data
        i3 = read_bits(data, FOOTER_WORDS_OFFSET, 0, 8)
        if read_bits(data, FOOTER_WORDS_OFFSET, 0x21, 1):
            i3 = -i3
        return CalibrationInfo(
            i1=read_bits(data, HEADER_WORDS_OFFSET, 0, 3),
            i2=read_bits(data, HEADER_WORDS_OFFSET, 3, 0xA),
            i3=i3,
            i4=read_bits(data, FOOTER_WORDS_OFFSET, 8, 0xE),
            i5=read_bits(data, FOOTER_WORDS_OFFSET, 0x28, 0xC) << 2,
            i6=read_bits(data, FOOTER_WORDS_OFFSET, 0x34, 0xC) << 2,
        )


def reference_glucose(raw_glucose: int, raw_temperature: int, info: CalibrationInfo) -> Optional[float]:
    """
    Thermistor compensated glucose for one raw glucose/temperature pair.
    Returns None when the factory words leave the model undefined.
    """
    if info.i4 == info.i3 or info.i6 == 0:
        return None
    resistance = raw_temperature * THERMISTOR_SCALE / info.i6 - THERMISTOR_OFFSET
    if resistance <= 0:
        return None
    log_r = math.log(resistance)
    denominator = STEINHART_A + STEINHART_B * log_r + STEINHART_C * log_r**3
    if denominator <= 0:
        return None
    celsius = 1.0 / denominator - 273.15
    scaled = GLUCOSE_SPAN * (raw_glucose - info.i3) / (info.i4 - info.i3)
    return scaled * TEMPERATURE_BASE ** (TEMPERATURE_REFERENCE_C - celsius)


def derive_parameters(block: RawBlock, serial_number: str) -> Optional[CalibrationParameters]:
    """
    Fit the four linear coefficients to the reference model on a 2x2 grid of raw
    glucose and raw temperature values.
    """
    info = CalibrationInfo.from_block(block)
    grid: Dict[tuple, float] = {}
    for temperature in (TEMPERATURE_LOWER_THRESHOLD, TEMPERATURE_UPPER_THRESHOLD):
        for glucose in (GLUCOSE_LOWER_THRESHOLD, GLUCOSE_UPPER_THRESHOLD):
            value = reference_glucose(glucose, temperature, info)
            if value is None:
                logger.debug("Reference model undefined for calibration info %s", info)
                return None
            grid[(glucose, temperature)] = value

    glucose_span = GLUCOSE_UPPER_THRESHOLD - GLUCOSE_LOWER_THRESHOLD
    temperature_span = TEMPERATURE_LOWER_THRESHOLD - TEMPERATURE_UPPER_THRESHOLD

    def line(temperature: int) -> tuple:
        low = grid[(GLUCOSE_LOWER_THRESHOLD, temperature)]
        high = grid[(GLUCOSE_UPPER_THRESHOLD, temperature)]
        slope = (high - low) / glucose_span
        return slope, high - GLUCOSE_UPPER_THRESHOLD * slope

    slope_low, offset_low = line(TEMPERATURE_LOWER_THRESHOLD)
    slope_high, offset_high = line(TEMPERATURE_UPPER_THRESHOLD)
    slope_slope = (slope_low - slope_high) / temperature_span
    slope_offset = (offset_low - offset_high) / temperature_span
    return CalibrationParameters(
        slope_slope=slope_slope,
        slope_offset=slope_offset,
        offset_slope=slope_low - slope_slope * TEMPERATURE_LOWER_THRESHOLD,
        offset_offset=offset_high - slope_offset * TEMPERATURE_UPPER_THRESHOLD,
        extra_slope=1.0,
        extra_offset=0.0,
        is_valid_for_footer_with_reverse_crcs=int(block.section_crc_valid(FOOTER_SECTION)),
        serial_number=serial_number,
    )


class CalibrationStore(Protocol):
    def load(self) -> Optional[CalibrationParameters]:
        ...

    def save(self, params: CalibrationParameters) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryCalibrationStore:
    def __init__(self, params: Optional[CalibrationParameters] = None) -> None:
        self._params = params

    def load(self) -> Optional[CalibrationParameters]:
        return self._params

    def save(self, params: CalibrationParameters) -> None:
        self._params = params

    def clear(self) -> None:
        self._params = None


class JsonCalibrationStore:
    """Keeps the parameters of the current sensor in a JSON file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> Optional[CalibrationParameters]:
        if not self.path.exists():
            return None
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a calibration parameter object")
        return CalibrationParameters.from_mapping(data)

    def save(self, params: CalibrationParameters) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(params.to_mapping(), indent=2), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class CalibrationManager:
    """
    Decides which calibration parameters a parsing pass may use.
    `resolve` returns None when the caller has to ask the calibration service.
    """

    def __init__(self, store: CalibrationStore, *, verbose: bool = False) -> None:
        self._store = store
        self._verbose = verbose

    @property
    def current(self) -> Optional[CalibrationParameters]:
        return self._store.load()

    def resolve(
        self, block: RawBlock, serial_number: str, sensor_type: SensorType
    ) -> Optional[CalibrationParameters]:
        try:
            params = self._store.load()
        except ValueError as exc:
            logger.warning("Discarding unreadable calibration cache: %s", exc)
            self._store.clear()
            params = None
        if params is not None and params.serial_number != serial_number:
            logger.info(
                "Discarding calibration parameters of sensor %s (current sensor %s)",
                params.serial_number,
                serial_number,
            )
            self._store.clear()
            params = None

        if params is None:
            params = derive_parameters(block, serial_number)
            if params is None:
                logger.info("Could not derive calibration parameters for sensor %s", serial_number)
                return None
            self._store.save(params)
            logger.info("Derived calibration parameters for sensor %s", serial_number)

        if not params.usable_for(sensor_type):
            logger.info("Stored calibration parameters have slope_slope = 0, fetching new ones")
            self._store.clear()
            return None

        logger.info("Using stored calibration parameters for sensor %s", serial_number)
        if self._verbose:
            logger.debug("Calibration parameters = %s", params)
        return params

    def accept(self, slope: CalibrationSlope, serial_number: str) -> CalibrationParameters:
        params = parameters_from_slope(slope, serial_number)
        self._store.save(params)
        logger.info("Stored calibration parameters received for sensor %s", serial_number)
        if self._verbose:
            logger.debug("Received calibration parameters = %s", params)
        return params

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .block import (
    HISTORY_SLOTS,
    HISTORY_TABLE_OFFSET,
    TREND_SLOTS,
    TREND_TABLE_OFFSET,
    RawBlock,
    SensorState,
)
from .calibration import CalibrationParameters
from .readings import GlucoseReading

logger = logging.getLogger(__name__)

RAW_CODE_MASK = 0x1FFF
# scale applied to the raw code when no calibration parameters are available
LIBRE_MULTIPLIER = 117.64705

HISTORY_INTERVAL_MINUTES = 15
HISTORY_DELAY_MINUTES = 3


@dataclass
class DecodedBlock:
    trend: List[GlucoseReading]
    history: List[GlucoseReading]
    sensor_state: SensorState
    sensor_age_minutes: int

    @property
    def readings(self) -> List[GlucoseReading]:
        return self.trend + self.history


def raw_code(sample: bytes) -> int:
    return struct.unpack_from("<H", sample)[0] & RAW_CODE_MASK


def most_recent_history_age(sensor_age_minutes: int, history_index: int) -> int:
    """
    Minutes between the reference time and the newest history record.

    History records belong to minutes 15, 30, 45, ... but are written three
    minutes later. The write index sometimes moves before the minute counter,
    in which case the newest record is one interval younger.
    """
    elapsed = sensor_age_minutes - HISTORY_DELAY_MINUTES
    # truncating division: ages below three minutes must not wrap around
    quotient = int(elapsed / HISTORY_INTERVAL_MINUTES)
    delay = elapsed - quotient * HISTORY_INTERVAL_MINUTES + HISTORY_DELAY_MINUTES
    if quotient % HISTORY_SLOTS == history_index:
        return delay
    return delay - HISTORY_INTERVAL_MINUTES


def extract_range(
    block: RawBlock,
    *,
    table_offset: int,
    slots: int,
    current_index: int,
    seconds_since_start: Callable[[int], float],
    sensor_start: datetime,
    calibration: Optional[CalibrationParameters] = None,
    newer_than: Optional[datetime] = None,
) -> List[GlucoseReading]:
    """
    Walk one circular table newest first, starting just before `current_index`.

    `seconds_since_start(n)` gives the offset from sensor start of the n-th
    newest record. A record is kept only if it is strictly older than the last
    accepted one, `newer_than` seeding that comparison.
    """
    readings: List[GlucoseReading] = []
    last_timestamp = newer_than
    for index in range(slots):
        slot = (current_index - index - 1) % slots
        timestamp = sensor_start + timedelta(seconds=seconds_since_start(index))
        if last_timestamp is not None and not timestamp < last_timestamp:
            continue
        sample = block.sample(table_offset, slot)
        code = raw_code(sample)
        if calibration is not None:
            reading = GlucoseReading(
                timestamp=timestamp,
                raw_value=code * LIBRE_MULTIPLIER,
                calibrated_value=calibration.glucose_from_sample(sample),
            )
        elif code > 0:
            reading = GlucoseReading(timestamp=timestamp, raw_value=code * LIBRE_MULTIPLIER)
        else:
            continue
        readings.append(reading)
        last_timestamp = timestamp
    return readings


def decode(
    block: RawBlock,
    calibration: Optional[CalibrationParameters] = None,
    reference_time: Optional[datetime] = None,
) -> DecodedBlock:
    now = reference_time or datetime.now(timezone.utc)
    age = block.sensor_age_minutes
    sensor_start = now - timedelta(minutes=age)

    trend = extract_range(
        block,
        table_offset=TREND_TABLE_OFFSET,
        slots=TREND_SLOTS,
        current_index=block.trend_index,
        seconds_since_start=lambda index: max(0, age - index) * 60.0,
        sensor_start=sensor_start,
        calibration=calibration,
    )

    newest_history_seconds = (age - most_recent_history_age(age, block.history_index)) * 60.0
    history = extract_range(
        block,
        table_offset=HISTORY_TABLE_OFFSET,
        slots=HISTORY_SLOTS,
        current_index=block.history_index,
        seconds_since_start=lambda index: max(
            0.0, newest_history_seconds - HISTORY_INTERVAL_MINUTES * 60.0 * index
        ),
        sensor_start=sensor_start,
        calibration=calibration,
        newer_than=trend[-1].timestamp if trend else None,
    )

    logger.debug(
        "Decoded %d trend and %d history readings (age=%d min, trend_index=%d, history_index=%d)",
        len(trend),
        len(history),
        age,
        block.trend_index,
        block.history_index,
    )
    return DecodedBlock(
        trend=trend,
        history=history,
        sensor_state=block.sensor_state,
        sensor_age_minutes=age,
    )

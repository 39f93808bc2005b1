from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .block import SensorState


@dataclass
class GlucoseReading:
    """
    One glucose sample. `raw_value` is the uncalibrated conversion of the sensor
    code; `calibrated_value` is set when calibration parameters were applied.
    Smoothing and stitching work on `value`, which is the calibrated value when
    there is one.
    """

    timestamp: datetime
    raw_value: float
    calibrated_value: Optional[float] = None

    @property
    def value(self) -> float:
        return self.raw_value if self.calibrated_value is None else self.calibrated_value

    @value.setter
    def value(self, new_value: float) -> None:
        if self.calibrated_value is None:
            self.raw_value = new_value
        else:
            self.calibrated_value = new_value

    @classmethod
    def stitched(cls, timestamp: datetime, value: float, *, calibrated: bool) -> "GlucoseReading":
        # Stored values from an earlier session carry no raw code of their own
        if calibrated:
            return cls(timestamp=timestamp, raw_value=math.nan, calibrated_value=value)
        return cls(timestamp=timestamp, raw_value=value)


@dataclass
class ProcessingResult:
    readings: List[GlucoseReading] = field(default_factory=list)
    sensor_state: Optional[SensorState] = None
    sensor_age_minutes: Optional[int] = None
    error: Optional[Exception] = None

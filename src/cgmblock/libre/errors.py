"""Errors reported through the block processor's error channel."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .block import SensorState, SensorType


class BlockProcessingError(Exception):
    """Base class for errors delivered to the readings delegate."""


class UnsupportedSensorVariant(BlockProcessingError):
    def __init__(self, sensor_type: "SensorType") -> None:
        self.sensor_type = sensor_type
        super().__init__(f"Sensor type {sensor_type.value} is not supported")


class MissingVendorInfo(BlockProcessingError):
    def __init__(self, sensor_type: "SensorType") -> None:
        self.sensor_type = sensor_type
        super().__init__(f"Sensor type {sensor_type.value} needs vendor info to be processed")


class SensorNotReady(BlockProcessingError):
    def __init__(self, state: Optional["SensorState"]) -> None:
        self.state = state
        label = state.value if state is not None else "n/a"
        super().__init__(f"Sensor is not ready (state={label})")


class UnknownSensorState(SensorNotReady):
    """The state byte did not match any known sensor state."""


class CalibrationStoreFailed(BlockProcessingError):
    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Calibration parameters could not be stored: {cause}")


class RemoteLookupFailed(BlockProcessingError):
    def __init__(self, cause: Optional[BaseException]) -> None:
        self.cause = cause
        super().__init__(f"Calibration service lookup failed: {cause}")

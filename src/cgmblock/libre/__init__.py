"""
Parsing of Libre sensor memory blocks into timestamped glucose readings.

The subpackage holds the block layout, the local decoder, calibration handling,
trend continuity and smoothing, plus the `BlockProcessor` that chooses between
local decoding and the remote calibration service.
"""

from .block import RawBlock, SensorState, SensorType, classify_sensor, crc16_ccitt, reverse_crc16
from .calibration import (
    CalibrationInfo,
    CalibrationManager,
    CalibrationParameters,
    JsonCalibrationStore,
    MemoryCalibrationStore,
    derive_parameters,
)
from .client import (
    CalibrationServiceClient,
    CalibrationSlope,
    CalibrationStatus,
    ExecutorCalibrationClient,
    MultiFormatGlucose,
)
from .config import ParserConfig, WebCalibrationConfig, load_config
from .continuity import ContinuityBuffer
from .decoder import DecodedBlock, decode
from .errors import (
    BlockProcessingError,
    CalibrationStoreFailed,
    MissingVendorInfo,
    RemoteLookupFailed,
    SensorNotReady,
    UnknownSensorState,
    UnsupportedSensorVariant,
)
from .processor import BlockProcessor, ReadingsDelegate
from .readings import GlucoseReading, ProcessingResult

__all__ = [
    "RawBlock",
    "SensorState",
    "SensorType",
    "classify_sensor",
    "crc16_ccitt",
    "reverse_crc16",
    "CalibrationInfo",
    "CalibrationManager",
    "CalibrationParameters",
    "JsonCalibrationStore",
    "MemoryCalibrationStore",
    "derive_parameters",
    "CalibrationServiceClient",
    "CalibrationSlope",
    "CalibrationStatus",
    "ExecutorCalibrationClient",
    "MultiFormatGlucose",
    "ParserConfig",
    "WebCalibrationConfig",
    "load_config",
    "ContinuityBuffer",
    "DecodedBlock",
    "decode",
    "BlockProcessingError",
    "CalibrationStoreFailed",
    "MissingVendorInfo",
    "RemoteLookupFailed",
    "SensorNotReady",
    "UnknownSensorState",
    "UnsupportedSensorVariant",
    "BlockProcessor",
    "ReadingsDelegate",
    "GlucoseReading",
    "ProcessingResult",
]

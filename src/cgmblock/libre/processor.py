from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from .block import RawBlock, SensorState, SensorType, classify_sensor
from .calibration import (
    CalibrationManager,
    CalibrationParameters,
    CalibrationStore,
    JsonCalibrationStore,
    MemoryCalibrationStore,
)
from .client import CalibrationServiceClient, CalibrationStatus, MultiFormatGlucose
from .config import ParserConfig
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
from .readings import GlucoseReading, ProcessingResult
from .smoothing import smooth_history, smooth_trend

logger = logging.getLogger(__name__)

MINIMUM_SENSOR_AGE_MINUTES = 60

Completion = Callable[[Optional[SensorState], Optional[BlockProcessingError]], None]


class ReadingsDelegate(Protocol):
    def readings_received(
        self,
        readings: List[GlucoseReading],
        battery_info: Optional[object],
        sensor_age_minutes: Optional[int],
    ) -> None:
        ...

    def error_occurred(self, error: BlockProcessingError) -> None:
        ...


def _single_shot(completion: Optional[Completion]) -> Completion:
    fired = False
    lock = threading.Lock()

    def finish(state: Optional[SensorState], error: Optional[BlockProcessingError]) -> None:
        nonlocal fired
        with lock:
            if fired:
                logger.warning("Completion already delivered, ignoring repeated call")
                return
            fired = True
        if completion is not None:
            completion(state, error)

    return finish


def _lookup_error(error: Optional[Exception]) -> Optional[BlockProcessingError]:
    if error is None or isinstance(error, BlockProcessingError):
        return error
    return RemoteLookupFailed(error)


class BlockProcessor:
    """
    Turns sensor memory blocks into readings for one sensor session.

    Chooses between local decoding and the calibration service, keeps the
    calibration parameters and the continuity buffer of the current sensor, and
    calls the completion handler exactly once per `process` call. Calls for the
    same sensor are expected to be serialized by the caller.
    """

    def __init__(
        self,
        config: ParserConfig,
        *,
        delegate: Optional[ReadingsDelegate] = None,
        client: Optional[CalibrationServiceClient] = None,
        store: Optional[CalibrationStore] = None,
    ) -> None:
        self.config = config
        self.delegate = delegate
        self.client = client
        if store is None:
            store = (
                JsonCalibrationStore(config.calibration_cache)
                if config.calibration_cache
                else MemoryCalibrationStore()
            )
        self.calibration = CalibrationManager(store, verbose=config.verbose_diagnostics)
        self.continuity = ContinuityBuffer()
        self._session_serial: Optional[str] = None

    def reset_session(self) -> None:
        self.continuity.reset()
        self._session_serial = None

    def process(
        self,
        data: bytes | RawBlock,
        *,
        serial_number: Optional[str] = None,
        vendor_info: Optional[str] = None,
        data_is_decrypted: bool = False,
        reference_time: Optional[datetime] = None,
        sensor_type: Optional[SensorType] = None,
        completion: Optional[Completion] = None,
    ) -> None:
        block = data if isinstance(data, RawBlock) else RawBlock(bytes(data))
        finish = _single_shot(completion)

        sensor_type = sensor_type or classify_sensor(vendor_info)
        if sensor_type is None:
            logger.info("Unidentified sensor type (vendor_info=%s), block ignored", vendor_info)
            finish(None, None)
            return
        logger.info("Processing block for sensor type %s", sensor_type.value)
        if not block.has_valid_crcs():
            logger.info("Block CRC check failed: %s", block.crc_report())
        self._track_session(serial_number)

        web = self.config.web_calibration
        remote_ready = (
            web.enabled and serial_number is not None and web.has_credentials and self.client is not None
        )
        if web.enabled and web.has_credentials and self.client is None:
            logger.warning("Web calibration enabled but no calibration service client configured")

        if remote_ready and not data_is_decrypted:
            assert serial_number is not None
            if sensor_type.uses_base_format:
                self._process_with_parameters(block, serial_number, sensor_type, reference_time, finish)
            elif sensor_type is SensorType.LIBRE_US:
                # known not to work; kept so the service response can be inspected
                self._signal(UnsupportedSensorVariant(sensor_type))
                self._fetch_multi_format(block, serial_number, vendor_info, finish)
            elif vendor_info is None:
                logger.info("Not processing block: %s", MissingVendorInfo(sensor_type))
                finish(None, None)
            else:
                self._fetch_multi_format(block, serial_number, vendor_info, finish)
        elif not web.enabled or data_is_decrypted:
            decoded = self._decode(block, None, reference_time)
            self._deliver(self._result_from(decoded), finish)
        else:
            logger.info("Web calibration enabled but serial number, site or token missing, nothing to do")
            finish(None, None)

    def _track_session(self, serial_number: Optional[str]) -> None:
        if serial_number is None or serial_number == self._session_serial:
            return
        if self._session_serial is not None:
            logger.info("Sensor changed from %s to %s, resetting session", self._session_serial, serial_number)
        self.continuity.reset()
        self._session_serial = serial_number

    def _decode(
        self,
        block: RawBlock,
        params: Optional[CalibrationParameters],
        reference_time: Optional[datetime],
    ) -> DecodedBlock:
        decoded = decode(block, params, reference_time)
        # blocks the state gate will reject must not replace the stored trend
        if self.config.smoothing_enabled and decoded.sensor_state.is_operational:
            stitched = self.continuity.stitch(decoded.trend)
            decoded.trend = smooth_trend(stitched)
            smooth_history(decoded.history)
        return decoded

    @staticmethod
    def _result_from(decoded: DecodedBlock) -> ProcessingResult:
        return ProcessingResult(
            readings=decoded.readings,
            sensor_state=decoded.sensor_state,
            sensor_age_minutes=decoded.sensor_age_minutes,
        )

    def _process_with_parameters(
        self,
        block: RawBlock,
        serial_number: str,
        sensor_type: SensorType,
        reference_time: Optional[datetime],
        finish: Completion,
    ) -> None:
        try:
            params = self.calibration.resolve(block, serial_number, sensor_type)
        except OSError as exc:
            logger.warning("Calibration store failed for sensor %s: %s", serial_number, exc)
            self._deliver(ProcessingResult(error=CalibrationStoreFailed(exc)), finish)
            return
        if params is not None:
            decoded = self._decode(block, params, reference_time)
            self._deliver(self._result_from(decoded), finish)
            return

        def on_status(status: Optional[CalibrationStatus], error: Optional[Exception]) -> None:
            if status is None or status.slope is None:
                self._deliver(ProcessingResult(error=_lookup_error(error)), finish)
                return
            try:
                received = self.calibration.accept(status.slope, serial_number)
            except OSError as exc:
                logger.warning("Could not store received calibration parameters: %s", exc)
                self._deliver(ProcessingResult(error=CalibrationStoreFailed(exc)), finish)
                return
            decoded = self._decode(block, received, reference_time)
            self._deliver(self._result_from(decoded), finish)

        web = self.config.web_calibration
        assert self.client is not None and web.site is not None and web.token is not None
        try:
            self.client.fetch_calibration_status(
                block, serial_number, site=web.site, token=web.token, callback=on_status
            )
        except Exception as exc:
            logger.warning("Calibration status lookup raised for sensor %s: %s", serial_number, exc)
            on_status(None, exc)

    def _fetch_multi_format(
        self,
        block: RawBlock,
        serial_number: str,
        vendor_info: Optional[str],
        finish: Completion,
    ) -> None:
        def on_glucose(response: Optional[MultiFormatGlucose], error: Optional[Exception]) -> None:
            if response is None:
                self._deliver(ProcessingResult(error=_lookup_error(error)), finish)
                return
            if self.config.verbose_diagnostics:
                logger.debug("Received multi-format response = %s", response)
            self._deliver(
                ProcessingResult(
                    readings=list(response.readings),
                    sensor_state=response.sensor_state,
                    sensor_age_minutes=response.sensor_age_minutes,
                    error=_lookup_error(error),
                ),
                finish,
            )

        web = self.config.web_calibration
        assert self.client is not None and web.site is not None and web.token is not None
        try:
            self.client.fetch_multi_format_glucose(
                block, serial_number, vendor_info, site=web.site, token=web.token, callback=on_glucose
            )
        except Exception as exc:
            logger.warning("Multi-format glucose lookup raised for sensor %s: %s", serial_number, exc)
            on_glucose(None, exc)

    def _signal(self, error: BlockProcessingError) -> None:
        logger.info("Reporting error: %s", error)
        if self.delegate is not None:
            self.delegate.error_occurred(error)

    def _deliver(self, result: ProcessingResult, finish: Completion) -> None:
        """Apply sensor state and warm-up gating, then hand the result to the delegate."""
        state = result.sensor_state
        if state is not None:
            logger.info("Sensor state = %s", state.value)
            if not state.is_operational:
                error: SensorNotReady = (
                    UnknownSensorState(state) if state is SensorState.UNKNOWN else SensorNotReady(state)
                )
                logger.info("Not processing data, sensor state is not ready or expired")
                self._signal(error)
                finish(state, error)
                return
        else:
            logger.info("Sensor state is unknown")

        upstream = _lookup_error(result.error)
        if upstream is not None:
            self._signal(upstream)

        readings = result.readings
        age = result.sensor_age_minutes
        if age is not None and age < MINIMUM_SENSOR_AGE_MINUTES:
            logger.info("Sensor age %d min is below %d min, no readings delivered", age, MINIMUM_SENSOR_AGE_MINUTES)
            readings = []

        if self.delegate is not None:
            self.delegate.readings_received(readings, None, age)
        finish(state, upstream)

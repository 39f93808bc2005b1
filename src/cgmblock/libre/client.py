"""
Boundary to the remote calibration service.

The service itself (HTTP transport, TLS, JSON encoding) lives outside this
package. The processor only needs the two single-shot callback operations
declared by `CalibrationServiceClient`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Protocol

from .block import RawBlock, SensorState
from .readings import GlucoseReading

logger = logging.getLogger(__name__)


@dataclass
class CalibrationSlope:
    slope_slope: Optional[float] = None
    slope_offset: Optional[float] = None
    offset_slope: Optional[float] = None
    offset_offset: Optional[float] = None
    is_valid_for_footer_with_reverse_crcs: Optional[float] = None


@dataclass
class CalibrationStatus:
    slope: Optional[CalibrationSlope] = None
    status: Optional[str] = None

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "CalibrationStatus":
        """Build a status from the decoded service response."""
        slope_data = data.get("slope")
        if slope_data is None:
            return CalibrationStatus(slope=None, status=_optional_str(data.get("status")))
        if not isinstance(slope_data, Mapping):
            raise ValueError("Calibration status 'slope' must be an object")
        slope = CalibrationSlope(
            slope_slope=_optional_float(slope_data, "slope_slope"),
            slope_offset=_optional_float(slope_data, "slope_offset"),
            offset_slope=_optional_float(slope_data, "offset_slope"),
            offset_offset=_optional_float(slope_data, "offset_offset"),
            is_valid_for_footer_with_reverse_crcs=_optional_float(
                slope_data, "isValidForFooterWithReverseCRCs"
            ),
        )
        return CalibrationStatus(slope=slope, status=_optional_str(data.get("status")))


@dataclass
class MultiFormatGlucose:
    readings: List[GlucoseReading] = field(default_factory=list)
    sensor_state: Optional[SensorState] = None
    sensor_age_minutes: Optional[int] = None


StatusCallback = Callable[[Optional[CalibrationStatus], Optional[Exception]], None]
GlucoseCallback = Callable[[Optional[MultiFormatGlucose], Optional[Exception]], None]


class CalibrationServiceClient(Protocol):
    def fetch_calibration_status(
        self,
        block: RawBlock,
        serial_number: str,
        *,
        site: str,
        token: str,
        callback: StatusCallback,
    ) -> None:
        ...

    def fetch_multi_format_glucose(
        self,
        block: RawBlock,
        serial_number: str,
        vendor_info: Optional[str],
        *,
        site: str,
        token: str,
        callback: GlucoseCallback,
    ) -> None:
        ...


class ExecutorCalibrationClient:
    """
    Adapts blocking fetch functions to the callback protocol. Exceptions raised by
    a fetcher are handed to the callback instead of propagating.
    """

    def __init__(
        self,
        status_fetcher: Callable[[RawBlock, str, str, str], CalibrationStatus],
        glucose_fetcher: Optional[
            Callable[[RawBlock, str, Optional[str], str, str], MultiFormatGlucose]
        ] = None,
    ) -> None:
        self._status_fetcher = status_fetcher
        self._glucose_fetcher = glucose_fetcher

    def fetch_calibration_status(
        self,
        block: RawBlock,
        serial_number: str,
        *,
        site: str,
        token: str,
        callback: StatusCallback,
    ) -> None:
        try:
            status = self._status_fetcher(block, serial_number, site, token)
        except Exception as exc:
            logger.warning("Calibration status lookup failed for sensor %s: %s", serial_number, exc)
            callback(None, exc)
            return
        callback(status, None)

    def fetch_multi_format_glucose(
        self,
        block: RawBlock,
        serial_number: str,
        vendor_info: Optional[str],
        *,
        site: str,
        token: str,
        callback: GlucoseCallback,
    ) -> None:
        if self._glucose_fetcher is None:
            callback(None, NotImplementedError("No multi-format glucose fetcher configured"))
            return
        try:
            response = self._glucose_fetcher(block, serial_number, vendor_info, site, token)
        except Exception as exc:
            logger.warning("Multi-format glucose lookup failed for sensor %s: %s", serial_number, exc)
            callback(None, exc)
            return
        callback(response, None)


def _optional_float(data: Mapping[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Calibration status field '{key}' is not numeric: {value!r}") from exc


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)

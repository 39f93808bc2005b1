from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import timedelta
from typing import Deque, List, Optional, Sequence

from .readings import GlucoseReading

logger = logging.getLogger(__name__)

MATCH_LENGTH = 4
MIN_VALUES = 16
CAPACITY = 32


def find_match_offset(values: Sequence[float], previous: Sequence[float]) -> Optional[int]:
    """First offset where `MATCH_LENGTH` consecutive values equal the head of `previous`."""
    for offset in range(MIN_VALUES - MATCH_LENGTH + 1):
        if all(values[offset + i] == previous[i] for i in range(MATCH_LENGTH)):
            return offset
    return None


def extend(new_trend: List[GlucoseReading], previous: Sequence[float]) -> List[GlucoseReading]:
    """
    Append values kept from an earlier session behind a freshly decoded trend.

    Requiring four equal values in a row rules out accidental overlaps while
    still accepting short flat stretches; it caps the gap that can be closed
    at 11 minutes. When nothing matches, `new_trend` itself is returned.
    """
    if len(new_trend) < MIN_VALUES or len(previous) < MIN_VALUES:
        return new_trend
    offset = find_match_offset([reading.value for reading in new_trend], previous)
    if offset is None:
        return new_trend

    calibrated = new_trend[-1].calibrated_value is not None
    extended = list(new_trend)
    timestamp = new_trend[-1].timestamp
    for value in previous[MATCH_LENGTH:]:
        timestamp -= timedelta(minutes=1)
        extended.append(GlucoseReading.stitched(timestamp, value, calibrated=calibrated))
    logger.debug(
        "Matched stored values at trend offset %d, appended %d readings",
        offset,
        len(extended) - len(new_trend),
    )
    return extended


class ContinuityBuffer:
    """
    Unsmoothed per-minute values of the previous pass, newest first.
    One instance belongs to one sensor session.
    """

    def __init__(self, capacity: int = CAPACITY) -> None:
        self._values: Deque[float] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    @property
    def values(self) -> List[float]:
        with self._lock:
            return list(self._values)

    def stitch(self, trend: List[GlucoseReading]) -> List[GlucoseReading]:
        """Extend `trend` with the stored values, then remember the result for the next pass."""
        with self._lock:
            extended = extend(trend, list(self._values))
            self._values.clear()
            self._values.extend(reading.value for reading in extended[: self._values.maxlen])
        return extended

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

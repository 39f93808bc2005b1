"""
Savitzky-Golay smoothing of trend and history readings.

Trend readings are one minute apart and strongly autocorrelated, so besides the
plain quadratic filter the trend gets a pass over values five minutes apart.
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np
from scipy import signal

from .readings import GlucoseReading

FILTER_HALF_WIDTH = 5
TREND_PASSES = 2
TREND_LENGTH = 16

LAG_OFFSETS = (-10, -5, 0, 5, 10)
LAG_HALF_WIDTH = 2
LAG_PASSES = 3


def savitzky_golay(values: Sequence[float], half_width: int) -> np.ndarray:
    """
    Quadratic Savitzky-Golay filter. The window shrinks to fit short inputs;
    fewer than three values are returned unchanged.
    """
    data = np.asarray(values, dtype=float)
    if data.size < 3:
        return data.copy()
    half_width = min(half_width, (data.size - 1) // 2)
    return signal.savgol_filter(data, window_length=2 * half_width + 1, polyorder=2, mode="interp")


def smooth_values(readings: Sequence[GlucoseReading], half_width: int, passes: int = 1) -> None:
    values = np.array([reading.value for reading in readings], dtype=float)
    for _ in range(passes):
        values = savitzky_golay(values, half_width)
    for reading, value in zip(readings, values):
        reading.value = float(value)


def smooth_five_minute_lag(readings: Sequence[GlucoseReading]) -> None:
    if len(readings) < TREND_LENGTH:
        return
    source = [reading.value for reading in readings]
    for index, reading in enumerate(readings):
        window: List[float] = []
        position = 0
        for offset in LAG_OFFSETS:
            neighbour = index + offset
            if not 0 <= neighbour < len(source):
                continue
            if offset < 0:
                position += 1
            window.append(source[neighbour])
        filtered = np.asarray(window, dtype=float)
        for _ in range(LAG_PASSES):
            filtered = savitzky_golay(filtered, LAG_HALF_WIDTH)
        reading.value = float(filtered[position])


def smooth_trend(readings: List[GlucoseReading]) -> List[GlucoseReading]:
    """Smooth a (possibly stitched) trend in place and return its newest 16 readings."""
    smooth_values(readings, FILTER_HALF_WIDTH, passes=TREND_PASSES)
    smooth_five_minute_lag(readings)
    return readings[:TREND_LENGTH]


def smooth_history(readings: List[GlucoseReading]) -> None:
    smooth_values(readings, FILTER_HALF_WIDTH)

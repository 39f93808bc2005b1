"""Report writers for decoded readings."""
from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pandas as pd

from .libre.readings import GlucoseReading

COLUMNS = ["timestamp", "raw_value", "calibrated_value", "value"]


def readings_frame(readings: Sequence[GlucoseReading]) -> pd.DataFrame:
    """One row per reading, newest first, in the order they were delivered."""

    rows: list[dict[str, object]] = [
        {
            "timestamp": reading.timestamp,
            "raw_value": reading.raw_value,
            "calibrated_value": reading.calibrated_value,
            "value": reading.value,
        }
        for reading in readings
    ]
    df = pd.DataFrame(rows, columns=COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df


def export_readings(readings: Sequence[GlucoseReading], output_path: Path) -> Path:
    """Persist *readings* as CSV and return the written path."""

    output_path.parent.mkdir(parents=True, exist_ok=True)
    readings_frame(readings).to_csv(output_path, index=False)
    return output_path

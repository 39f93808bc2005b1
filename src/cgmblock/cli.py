"""Command line interface for the cgmblock package."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer

from .libre.block import BLOCK_SIZE, RawBlock, classify_sensor
from .libre.calibration import CalibrationInfo, JsonCalibrationStore, derive_parameters
from .libre.config import load_config
from .libre.errors import BlockProcessingError
from .libre.processor import BlockProcessor
from .libre.readings import GlucoseReading
from .reporting import export_readings

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Libre sensor memory block utilities.")
calibration_app = typer.Typer(help="Calibration parameter utilities.")
app.add_typer(calibration_app, name="calibration")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_block(path: Path) -> RawBlock:
    """Accept either the raw 344 byte dump or the same bytes as hex text."""
    blob = path.read_bytes()
    if len(blob) != BLOCK_SIZE:
        try:
            blob = bytes.fromhex(blob.decode("ascii").strip())
        except (UnicodeDecodeError, ValueError) as exc:
            raise typer.BadParameter(
                f"{path} is neither a {BLOCK_SIZE} byte dump nor hex text", param_hint="--in"
            ) from exc
    try:
        return RawBlock(blob)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--in") from exc


def _parse_reference_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid ISO timestamp '{value}'", param_hint="--reference-time") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _CollectingDelegate:
    def __init__(self) -> None:
        self.readings: Optional[List[GlucoseReading]] = None
        self.errors: List[BlockProcessingError] = []
        self.sensor_age_minutes: Optional[int] = None

    def readings_received(self, readings, battery_info, sensor_age_minutes) -> None:
        self.readings = list(readings)
        self.sensor_age_minutes = sensor_age_minutes

    def error_occurred(self, error: BlockProcessingError) -> None:
        self.errors.append(error)


@app.command()
def info(
    input_path: Path = typer.Option(..., "--in", help="Sensor memory dump", exists=True, readable=True),
    vendor_info: Optional[str] = typer.Option(None, "--vendor-info", help="Hex vendor (patch) info."),
) -> None:
    """Show sensor state, age, table indices, CRC status and factory words."""

    block = _read_block(input_path)
    sensor_type = classify_sensor(vendor_info)
    crc = block.crc_report()
    cal = CalibrationInfo.from_block(block)
    typer.echo(f"Sensor type: {sensor_type.value if sensor_type else 'unidentified'}")
    typer.echo(f"State: {block.sensor_state.value}")
    typer.echo(f"Age: {block.sensor_age_minutes} min")
    typer.echo(f"Trend index: {block.trend_index}")
    typer.echo(f"History index: {block.history_index}")
    typer.echo("CRC: " + " ".join(f"{name}={'OK' if ok else 'FAIL'}" for name, ok in crc.items()))
    typer.echo(f"Calibration info: i1={cal.i1} i2={cal.i2} i3={cal.i3} i4={cal.i4} i5={cal.i5} i6={cal.i6}")


@app.command()
def decode(
    input_path: Path = typer.Option(..., "--in", help="Sensor memory dump", exists=True, readable=True),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Parser config JSON."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set smoothing_enabled=true",
    ),
    serial: Optional[str] = typer.Option(None, "--serial", help="Sensor serial number."),
    vendor_info: Optional[str] = typer.Option(None, "--vendor-info", help="Hex vendor (patch) info."),
    decrypted: bool = typer.Option(False, "--decrypted", help="Block is already decrypted to base format."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write readings to this CSV instead of stdout."),
    reference_time: Optional[str] = typer.Option(
        None, "--reference-time", help="ISO timestamp of the read (default: now, UTC)."
    ),
) -> None:
    """Decode a memory dump into readings."""

    block = _read_block(input_path)
    try:
        cfg = load_config(config_path, override or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--set") from exc
    when = _parse_reference_time(reference_time)

    delegate = _CollectingDelegate()
    processor = BlockProcessor(cfg, delegate=delegate)
    processor.process(
        block,
        serial_number=serial,
        vendor_info=vendor_info,
        data_is_decrypted=decrypted,
        reference_time=when,
    )

    for error in delegate.errors:
        typer.echo(f"[warning] {error}")
    if delegate.readings is None:
        typer.echo("No readings produced")
        raise typer.Exit(code=1)
    if out is not None:
        export_readings(delegate.readings, out)
        typer.echo(f"Wrote {len(delegate.readings)} readings to {out}")
        return
    for reading in delegate.readings:
        typer.echo(f"{reading.timestamp.isoformat()} {reading.value:.1f}")
    typer.echo(f"{len(delegate.readings)} readings (sensor age {delegate.sensor_age_minutes} min)")


@calibration_app.command("derive")
def calibration_derive(
    input_path: Path = typer.Option(..., "--in", help="Sensor memory dump", exists=True, readable=True),
    serial: str = typer.Option(..., "--serial", help="Sensor serial number."),
    out: Optional[Path] = typer.Option(None, "--out", help="Store the parameters in this JSON file."),
) -> None:
    """Derive calibration parameters from the factory words of a dump."""

    block = _read_block(input_path)
    params = derive_parameters(block, serial)
    if params is None:
        typer.echo("Calibration parameters could not be derived from this block")
        raise typer.Exit(code=1)
    for key, value in params.to_mapping().items():
        typer.echo(f"{key}: {value}")
    if out is not None:
        JsonCalibrationStore(out).save(params)
        typer.echo(f"Wrote calibration parameters to {out}")


@calibration_app.command("show")
def calibration_show(
    input_path: Path = typer.Option(..., "--in", help="Calibration parameter JSON", exists=True, readable=True),
) -> None:
    """Print stored calibration parameters."""

    try:
        params = JsonCalibrationStore(input_path).load()
    except ValueError as exc:
        typer.echo(f"Invalid calibration file: {exc}")
        raise typer.Exit(code=1) from exc
    if params is None:
        typer.echo("No calibration parameters stored")
        raise typer.Exit(code=1)
    for key, value in params.to_mapping().items():
        typer.echo(f"{key}: {value}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()

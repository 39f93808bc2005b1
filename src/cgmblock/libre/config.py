from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence


@dataclass
class WebCalibrationConfig:
    enabled: bool = False
    site: Optional[str] = None
    token: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.site) and bool(self.token)


@dataclass
class ParserConfig:
    smoothing_enabled: bool = False
    verbose_diagnostics: bool = False  # logging detail only
    web_calibration: WebCalibrationConfig = field(default_factory=WebCalibrationConfig)
    calibration_cache: Path | None = None


# dotted setting name -> (section, key) in the JSON file
_SETTINGS: Dict[str, tuple] = {
    "smoothing_enabled": (None, "smoothing_enabled"),
    "verbose_diagnostics": (None, "verbose_diagnostics"),
    "calibration_cache": (None, "calibration_cache"),
    "web_calibration.enabled": ("web_calibration", "enabled"),
    "web_calibration.site": ("web_calibration", "site"),
    "web_calibration.token": ("web_calibration", "token"),
}


def _read_settings(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    web = data.get("web_calibration") or {}
    if not isinstance(web, dict):
        raise ValueError("web_calibration must be an object")
    settings: Dict[str, Any] = {}
    for name, (section, key) in _SETTINGS.items():
        source = web if section == "web_calibration" else data
        if key in source:
            settings[name] = source[key]
    return settings


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> ParserConfig:
    """
    Load the parser configuration from JSON and apply CLI-style overrides.

    Overrides are `name=value` pairs using the dotted setting names, e.g.:
        ["smoothing_enabled=true", "web_calibration.site=https://example.org"]
    `null` clears an optional setting. Without a path only the defaults and
    overrides are used.
    """
    settings = _read_settings(Path(path)) if path is not None else {}
    for item in overrides or []:
        if "=" not in item:
            raise ValueError(f"Override '{item}' must use name=value syntax")
        name, value = (part.strip() for part in item.split("=", 1))
        if name not in _SETTINGS:
            raise ValueError(f"Unknown setting '{name}', expected one of {sorted(_SETTINGS)}")
        settings[name] = value

    cache = _as_optional_str(settings.get("calibration_cache"))
    return ParserConfig(
        smoothing_enabled=_as_bool(settings, "smoothing_enabled"),
        verbose_diagnostics=_as_bool(settings, "verbose_diagnostics"),
        web_calibration=WebCalibrationConfig(
            enabled=_as_bool(settings, "web_calibration.enabled"),
            site=_as_optional_str(settings.get("web_calibration.site")),
            token=_as_optional_str(settings.get("web_calibration.token")),
        ),
        calibration_cache=Path(cache) if cache else None,
    )


def _as_bool(settings: Dict[str, Any], name: str) -> bool:
    value = settings.get(name, False)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"true", "false"}:
        return value.lower() == "true"
    raise ValueError(f"'{name}' must be true or false, got {value!r}")


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in {"", "null", "none"}:
        return None
    return text

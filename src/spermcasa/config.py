#!/usr/bin/env python3
"""
Parameter handling: defaults as a nested dict, optional JSON params file,
conversion into the dataclass configs used by the core.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .core.analysis import KinematicsConfig
from .core.common import CalibrationSettings
from .core.detect import DetectionConfig
from .core.interpretation import InterpretationConfig
from .core.pipeline import AnalysisConfig, PipelineConfig
from .core.population import PopulationConfig
from .core.report import SummaryConfig
from .core.tracker import TrackerConfig

logger = logging.getLogger(__name__)

DEFAULT_FPS = 25.0

_SECTIONS = {
    "detection": DetectionConfig,
    "tracking": TrackerConfig,
    "kinematics": KinematicsConfig,
    "population": PopulationConfig,
    "interpretation": InterpretationConfig,
    "summary": SummaryConfig,
    "pipeline": PipelineConfig,
}

_ATTRIBUTES = {
    "detection": "detection",
    "tracking": "tracker",
    "kinematics": "kinematics",
    "population": "population",
    "interpretation": "interpretation",
    "summary": "summary",
    "pipeline": "pipeline",
}


def create_default_params() -> Dict[str, Dict[str, Any]]:
    """Return default params."""
    params = {name: asdict(cls()) for name, cls in _SECTIONS.items()}
    params["calibration"] = {
        "pixel_size": 0.5,  # um/pixel
        "fps": None,  # None: use the video frame rate
        "temperature_c": 37.0,
    }
    params["input"] = {
        "start_frame": 0,
        "end_frame": None,
        "max_frames": 100,
    }
    return params


def load_configuration(
    params_file: Optional[Union[str, Path]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Load configuration from defaults and optional JSON params file."""
    params = create_default_params()

    if params_file is None:
        return params
    params_file = Path(params_file)
    if not params_file.exists():
        raise FileNotFoundError(f"Params file does not exist: {params_file}")

    with open(params_file, "r") as fh:
        loaded = json.load(fh)

    for key, values in loaded.items():
        if key not in params:
            logger.warning("Ignoring unknown params section '%s'", key)
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Params section '{key}' must be an object")
        params[key].update(values)

    return params


def apply_overrides(
    params: Dict[str, Dict[str, Any]], overrides: Dict[str, Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    """Apply non-None overrides (e.g. from the CLI) on top of params."""
    for section, values in overrides.items():
        for key, value in values.items():
            if value is not None:
                params.setdefault(section, {})[key] = value
    return params


def _build(cls, values: Dict[str, Any], section: str):
    names = {f.name for f in fields(cls)}
    unknown = set(values) - names
    if unknown:
        logger.warning(
            "Ignoring unknown '%s' parameters: %s", section, ", ".join(sorted(unknown))
        )
    obj = cls(**{k: v for k, v in values.items() if k in names})
    if hasattr(obj, "validate"):
        obj.validate()
    return obj


def config_from_params(params: Dict[str, Dict[str, Any]]) -> AnalysisConfig:
    """Build an AnalysisConfig from a params dict."""
    kwargs = {}
    for section, cls in _SECTIONS.items():
        kwargs[_ATTRIBUTES[section]] = _build(cls, params.get(section, {}), section)
    return AnalysisConfig(**kwargs)


def calibration_from_params(
    params: Dict[str, Dict[str, Any]], source_fps: Optional[float] = None
) -> CalibrationSettings:
    """Calibration from params; a missing fps falls back to the source, then DEFAULT_FPS."""
    cal = params.get("calibration", {})
    fps = cal.get("fps") or source_fps
    if not fps:
        logger.warning("Frame rate unknown, assuming %.1f fps", DEFAULT_FPS)
        fps = DEFAULT_FPS
    return CalibrationSettings(
        microns_per_pixel=float(cal["pixel_size"]),
        frame_rate=float(fps),
        temperature_c=float(cal.get("temperature_c", 37.0)),
    )

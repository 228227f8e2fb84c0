#!/usr/bin/env python3
"""
Data structures shared by the detection, tracking and analysis stages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class Frame:
    """One decoded raster frame. Not retained after detection."""

    index: int
    timestamp: float  # seconds since the first decoded frame
    pixels: np.ndarray = field(repr=False, compare=False)


@dataclass
class Detection:
    """Detection data structure used across multiple modules."""

    frame: int
    x: float
    y: float
    width: float = 0.0
    height: float = 0.0
    confidence: float = 1.0
    class_label: int = 0
    area: float = 0.0

    @property
    def bbox(self) -> Tuple[float, float, float, float]:
        """Top-left (x, y, w, h) box around the detection centre."""
        return (
            self.x - self.width / 2.0,
            self.y - self.height / 2.0,
            self.width,
            self.height,
        )


@dataclass(frozen=True)
class TrackPoint:
    frame: int
    x: float
    y: float
    confidence: float


@dataclass(frozen=True)
class CalibrationSettings:
    """Spatial/temporal calibration supplied once per analysis run."""

    microns_per_pixel: float
    frame_rate: float
    temperature_c: float = 37.0

    def __post_init__(self):
        if self.microns_per_pixel <= 0:
            raise ValueError("microns_per_pixel must be > 0")
        if self.frame_rate <= 0:
            raise ValueError("frame_rate must be > 0")


@dataclass(frozen=True)
class TrackRecord:
    """
    Read-only snapshot of a track.

    ``end_frame`` is exclusive: a track observed on frames 0..99 has
    ``start_frame=0`` and ``end_frame=100``.
    """

    track_id: int
    positions: Tuple[TrackPoint, ...]
    start_frame: int
    end_frame: int
    state: str
    confirmed: bool
    termination_reason: Optional[str] = None

    @property
    def n_points(self) -> int:
        return len(self.positions)

    def xy(self) -> np.ndarray:
        """Positions as an (N, 2) float array."""
        if not self.positions:
            return np.empty((0, 2), dtype=float)
        return np.array([[p.x, p.y] for p in self.positions], dtype=float)

    def mean_confidence(self) -> Optional[float]:
        if not self.positions:
            return None
        return float(np.mean([p.confidence for p in self.positions]))

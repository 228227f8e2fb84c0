#!/usr/bin/env python3
"""
Sperm Kinematics (CASA parameters)
==================================

Per-track motility parameters computed from tracker snapshots:

    VCL  curvilinear velocity     curvilinear distance / elapsed time
    VSL  straight-line velocity   first-to-last distance / elapsed time
    VAP  average-path velocity    smoothed path length / elapsed time
    LIN  linearity                VSL / VCL
    STR  straightness             VSL / VAP
    WOB  wobble                   VAP / VCL
    ALH  lateral head amplitude   2 x max |deviation from smoothed path|
    BCF  beat-cross frequency     crossings of the smoothed path per second
    MAD  mean angular displacement (degrees)

Distances are in micrometres, velocities in um/s, frequencies in Hz.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .common import (
    CalibrationSettings,
    TrackRecord,
    centered_moving_average,
    count_sign_changes,
    lateral_deviation,
    path_length,
    safe_ratio,
)

logger = logging.getLogger(__name__)


@dataclass
class KinematicsConfig:
    smoothing_window: int = 5  # frames, centred moving average for VAP/ALH/BCF
    min_positions: int = 2

    def validate(self) -> None:
        if self.smoothing_window < 1:
            raise ValueError("smoothing_window must be >= 1")
        if self.min_positions < 2:
            raise ValueError("min_positions must be >= 2")


@dataclass(frozen=True)
class TrackKinematics:
    track_id: int
    n_points: int
    elapsed_s: Optional[float]
    vcl: Optional[float] = None
    vsl: Optional[float] = None
    vap: Optional[float] = None
    lin: Optional[float] = None
    str: Optional[float] = None
    wob: Optional[float] = None
    alh: Optional[float] = None
    bcf: Optional[float] = None
    mad_deg: Optional[float] = None
    curvilinear_distance_um: Optional[float] = None
    straight_distance_um: Optional[float] = None
    mean_confidence: Optional[float] = None
    is_valid_for_analysis: bool = False
    motility: Optional[str] = None


def calculate_mad(points: np.ndarray) -> Optional[float]:
    """Mean absolute turning angle between consecutive segments, in degrees."""
    if len(points) < 3:
        return None
    seg = np.diff(points, axis=0)
    norms = np.linalg.norm(seg, axis=1)
    v1, v2 = seg[:-1], seg[1:]
    n1, n2 = norms[:-1], norms[1:]
    ok = (n1 > 0) & (n2 > 0)
    if not np.any(ok):
        return None
    cos_angle = np.einsum("ij,ij->i", v1[ok], v2[ok]) / (n1[ok] * n2[ok])
    # Clamp to [-1, 1] to avoid numerical errors
    cos_angle = np.clip(cos_angle, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_angle)).mean())


def _invalid(record: TrackRecord, elapsed: Optional[float]) -> TrackKinematics:
    return TrackKinematics(
        track_id=record.track_id,
        n_points=record.n_points,
        elapsed_s=elapsed,
        mean_confidence=record.mean_confidence(),
        is_valid_for_analysis=False,
    )


def compute_track_kinematics(
    record: TrackRecord,
    calibration: CalibrationSettings,
    config: Optional[KinematicsConfig] = None,
) -> TrackKinematics:
    """
    Kinematics for one track.

    Tracks with fewer than ``min_positions`` points or no elapsed time come
    back with ``is_valid_for_analysis=False`` and every metric set to None.
    """
    config = config or KinematicsConfig()

    elapsed = None
    if record.n_points > 0:
        elapsed = (record.end_frame - record.start_frame) / calibration.frame_rate

    if record.n_points < config.min_positions or elapsed is None or elapsed <= 0:
        return _invalid(record, elapsed)

    mpp = calibration.microns_per_pixel
    raw = record.xy()
    smooth = centered_moving_average(raw, config.smoothing_window)

    curvilinear_um = path_length(raw) * mpp
    straight_um = float(np.linalg.norm(raw[-1] - raw[0])) * mpp
    average_path_um = path_length(smooth) * mpp

    vcl = curvilinear_um / elapsed
    vsl = straight_um / elapsed
    vap = average_path_um / elapsed

    deviation = lateral_deviation(raw, smooth)
    alh = 2.0 * float(np.max(np.abs(deviation))) * mpp
    bcf = count_sign_changes(deviation) / elapsed

    return TrackKinematics(
        track_id=record.track_id,
        n_points=record.n_points,
        elapsed_s=elapsed,
        vcl=vcl,
        vsl=vsl,
        vap=vap,
        lin=safe_ratio(vsl, vcl),
        str=safe_ratio(vsl, vap),
        wob=safe_ratio(vap, vcl),
        alh=alh,
        bcf=bcf,
        mad_deg=calculate_mad(raw),
        curvilinear_distance_um=curvilinear_um,
        straight_distance_um=straight_um,
        mean_confidence=record.mean_confidence(),
        is_valid_for_analysis=True,
    )


def compute_kinematics_batch(
    records: Sequence[TrackRecord],
    calibration: CalibrationSettings,
    config: Optional[KinematicsConfig] = None,
    n_jobs: int = 1,
) -> List[TrackKinematics]:
    """Kinematics for many tracks; output order follows ``records``."""
    config = config or KinematicsConfig()
    config.validate()
    if n_jobs == 1 or len(records) < 2:
        return [compute_track_kinematics(r, calibration, config) for r in records]

    logger.debug("Computing kinematics for %d tracks with n_jobs=%d", len(records), n_jobs)
    return Parallel(n_jobs=n_jobs, backend="threading")(
        delayed(compute_track_kinematics)(r, calibration, config) for r in records
    )


KINEMATICS_COLUMNS = [
    "track_id",
    "n_points",
    "elapsed_s",
    "VCL_um_s",
    "VSL_um_s",
    "VAP_um_s",
    "LIN",
    "STR",
    "WOB",
    "ALH_um",
    "BCF_hz",
    "MAD_deg",
    "curvilinear_distance_um",
    "straight_distance_um",
    "mean_confidence",
    "is_valid_for_analysis",
    "motility",
]


def kinematics_to_dataframe(kinematics: Sequence[TrackKinematics]) -> pd.DataFrame:
    rows = []
    for k in kinematics:
        d = asdict(k)
        rows.append(
            {
                "track_id": d["track_id"],
                "n_points": d["n_points"],
                "elapsed_s": d["elapsed_s"],
                "VCL_um_s": d["vcl"],
                "VSL_um_s": d["vsl"],
                "VAP_um_s": d["vap"],
                "LIN": d["lin"],
                "STR": d["str"],
                "WOB": d["wob"],
                "ALH_um": d["alh"],
                "BCF_hz": d["bcf"],
                "MAD_deg": d["mad_deg"],
                "curvilinear_distance_um": d["curvilinear_distance_um"],
                "straight_distance_um": d["straight_distance_um"],
                "mean_confidence": d["mean_confidence"],
                "is_valid_for_analysis": d["is_valid_for_analysis"],
                "motility": d["motility"],
            }
        )
    return pd.DataFrame(rows, columns=KINEMATICS_COLUMNS)

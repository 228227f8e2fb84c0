#!/usr/bin/env python3
"""
Population-level motility statistics.

Per-track kinematics are classified as progressive, non-progressive or
immotile and rolled up into concentration, motility percentages and mean
velocities over the tracks that were valid for analysis.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

import numpy as np

from .analysis import TrackKinematics
from .common import TrackRecord

logger = logging.getLogger(__name__)


class MotilityClass:
    PROGRESSIVE = "progressive"
    NON_PROGRESSIVE = "non_progressive"
    IMMOTILE = "immotile"


@dataclass
class PopulationConfig:
    progressive_speed_threshold: float = 5.0  # um/s, applied to VSL
    min_straightness: float = 0.8  # STR
    immotile_epsilon_um: float = 2.0  # net displacement below which a cell is immotile

    analysis_area_mm2: float = 1.0
    chamber_depth_um: float = 20.0
    sample_volume_ul: Optional[float] = None  # overrides area x depth when set

    def validate(self) -> None:
        if self.sample_volume_ul is not None and self.sample_volume_ul <= 0:
            raise ValueError("sample_volume_ul must be > 0")
        if self.analysis_area_mm2 <= 0 or self.chamber_depth_um <= 0:
            raise ValueError("analysis_area_mm2 and chamber_depth_um must be > 0")

    @property
    def volume_ul(self) -> float:
        """Imaged sample volume in microlitres (1 mm^3 == 1 uL)."""
        if self.sample_volume_ul is not None:
            return self.sample_volume_ul
        return self.analysis_area_mm2 * self.chamber_depth_um / 1000.0


@dataclass(frozen=True)
class PopulationMetrics:
    total_count: int
    tracked_count: int
    concentration: float  # 10^6 cells / mL
    progressive_motility: float  # %
    non_progressive_motility: float
    immotile_percent: float
    total_motility: float
    vcl: Optional[float] = None
    vsl: Optional[float] = None
    vap: Optional[float] = None
    lin: Optional[float] = None
    str: Optional[float] = None
    wob: Optional[float] = None
    alh: Optional[float] = None
    bcf: Optional[float] = None
    progressive_count: int = 0
    non_progressive_count: int = 0
    immotile_count: int = 0
    total_motile_count: float = 0.0
    sample_volume_ul: float = 0.0


def classify_motility(
    kinematics: TrackKinematics, config: Optional[PopulationConfig] = None
) -> Optional[str]:
    """Motility class of one valid track; None for tracks not valid for analysis."""
    config = config or PopulationConfig()
    if not kinematics.is_valid_for_analysis:
        return None

    # net displacement, so centroid jitter on a dead cell does not count as motion
    if (kinematics.straight_distance_um or 0.0) < config.immotile_epsilon_um:
        return MotilityClass.IMMOTILE
    if (
        kinematics.vsl is not None
        and kinematics.vsl >= config.progressive_speed_threshold
        and kinematics.str is not None
        and kinematics.str >= config.min_straightness
    ):
        return MotilityClass.PROGRESSIVE
    return MotilityClass.NON_PROGRESSIVE


def annotate_motility(
    kinematics: Sequence[TrackKinematics], config: Optional[PopulationConfig] = None
) -> List[TrackKinematics]:
    """Copies of ``kinematics`` with the ``motility`` field filled in."""
    return [replace(k, motility=classify_motility(k, config)) for k in kinematics]


def _mean(values: List[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return float(np.mean(present))


def _percent(count: int, total: int) -> float:
    return 100.0 * count / total if total > 0 else 0.0


def aggregate_population(
    records: Sequence[TrackRecord],
    kinematics: Sequence[TrackKinematics],
    config: Optional[PopulationConfig] = None,
) -> PopulationMetrics:
    """
    Roll per-track kinematics up into population metrics.

    Args:
        records: confirmed tracks; their number is the total count
        kinematics: kinematics of those tracks
        config: classification thresholds and sample volume

    Returns:
        PopulationMetrics; percentages are 0 and means None when no track
        is valid for analysis
    """
    config = config or PopulationConfig()
    config.validate()

    total_count = len(records)
    valid = [k for k in kinematics if k.is_valid_for_analysis]
    tracked_count = len(valid)

    classes = [k.motility or classify_motility(k, config) for k in valid]
    n_prog = classes.count(MotilityClass.PROGRESSIVE)
    n_nonprog = classes.count(MotilityClass.NON_PROGRESSIVE)
    n_immotile = classes.count(MotilityClass.IMMOTILE)

    progressive = _percent(n_prog, tracked_count)
    non_progressive = _percent(n_nonprog, tracked_count)
    immotile = _percent(n_immotile, tracked_count)
    total_motility = progressive + non_progressive

    volume_ul = config.volume_ul
    # cells per uL / 1000 == 10^6 cells per mL
    concentration = total_count / volume_ul / 1000.0

    logger.info(
        "Population: total=%d tracked=%d PR=%.1f%% NP=%.1f%% IM=%.1f%% conc=%.3f x10^6/mL",
        total_count,
        tracked_count,
        progressive,
        non_progressive,
        immotile,
        concentration,
    )

    return PopulationMetrics(
        total_count=total_count,
        tracked_count=tracked_count,
        concentration=concentration,
        progressive_motility=progressive,
        non_progressive_motility=non_progressive,
        immotile_percent=immotile,
        total_motility=total_motility,
        vcl=_mean([k.vcl for k in valid]),
        vsl=_mean([k.vsl for k in valid]),
        vap=_mean([k.vap for k in valid]),
        lin=_mean([k.lin for k in valid]),
        str=_mean([k.str for k in valid]),
        wob=_mean([k.wob for k in valid]),
        alh=_mean([k.alh for k in valid]),
        bcf=_mean([k.bcf for k in valid]),
        progressive_count=n_prog,
        non_progressive_count=n_nonprog,
        immotile_count=n_immotile,
        total_motile_count=total_count * total_motility / 100.0,
        sample_volume_ul=volume_ul,
    )

#!/usr/bin/env python3
"""
Population-level interpretation against WHO 2010 reference values.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .population import PopulationMetrics


class Interpretation(Enum):
    NORMAL = 1
    OLIGOSPERMIA = 2
    ASTHENOSPERMIA = 3
    TERATOSPERMIA = 4
    AZOOSPERMIA = 5
    OLIGO_ASTHENOSPERMIA = 6
    OLIGO_TERATOSPERMIA = 7
    ASTHENO_TERATOSPERMIA = 8
    OLIGO_ASTHENO_TERATOSPERMIA = 9

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    Interpretation.NORMAL: "Normal",
    Interpretation.OLIGOSPERMIA: "Oligospermia",
    Interpretation.ASTHENOSPERMIA: "Asthenospermia",
    Interpretation.TERATOSPERMIA: "Teratospermia",
    Interpretation.AZOOSPERMIA: "Azoospermia",
    Interpretation.OLIGO_ASTHENOSPERMIA: "Oligoasthenospermia",
    Interpretation.OLIGO_TERATOSPERMIA: "Oligoteratospermia",
    Interpretation.ASTHENO_TERATOSPERMIA: "Asthenoteratospermia",
    Interpretation.OLIGO_ASTHENO_TERATOSPERMIA: "Oligoasthenoteratospermia",
}


@dataclass
class InterpretationConfig:
    low_concentration_threshold: float = 15.0  # 10^6/mL
    low_progressive_threshold: float = 32.0  # %
    low_total_motility_threshold: float = 40.0  # %
    low_velocity_threshold: float = 20.0  # um/s, VCL
    high_velocity_threshold: float = 50.0  # um/s, VCL


def classify_population(
    metrics: PopulationMetrics, config: Optional[InterpretationConfig] = None
) -> Interpretation:
    """
    First matching rule wins. Morphology is not assessed, so no Terato* result.

    When sperm were counted but no track was valid for analysis, progressive
    motility is 0 % by construction and the result is driven by missing data:
    Asthenospermia (or Oligoasthenospermia at low concentration). The notes
    flag this case.
    """
    config = config or InterpretationConfig()

    if metrics.total_count == 0:
        return Interpretation.AZOOSPERMIA

    low_count = metrics.concentration < config.low_concentration_threshold
    low_motility = metrics.progressive_motility < config.low_progressive_threshold

    if low_count and low_motility:
        return Interpretation.OLIGO_ASTHENOSPERMIA
    if low_count:
        return Interpretation.OLIGOSPERMIA
    if low_motility:
        return Interpretation.ASTHENOSPERMIA
    return Interpretation.NORMAL


def generate_interpretation_notes(
    metrics: PopulationMetrics, config: Optional[InterpretationConfig] = None
) -> str:
    """Narrative notes, one per assessed metric, joined into a paragraph."""
    config = config or InterpretationConfig()
    notes: List[str] = []

    if metrics.total_count == 0:
        notes.append("No sperm detected in the analysed field")
    elif metrics.concentration < config.low_concentration_threshold:
        notes.append("Sperm concentration below reference (oligospermia)")
    else:
        notes.append("Sperm concentration within reference")

    if metrics.tracked_count == 0:
        notes.append("Progressive motility: insufficient data")
        if metrics.total_count > 0:
            notes.append(
                "No track was long enough to assess motility; "
                "the motility classification reflects missing data"
            )
        notes.append("Total motility: insufficient data")
    else:
        if metrics.progressive_motility < config.low_progressive_threshold:
            notes.append("Progressive motility below reference")
        else:
            notes.append("Progressive motility within reference")

        if metrics.total_motility < config.low_total_motility_threshold:
            notes.append("Total motility below reference")
        else:
            notes.append("Total motility within reference")

    if metrics.vcl is None:
        notes.append("Velocity: insufficient data")
    elif metrics.vcl < config.low_velocity_threshold:
        notes.append("Sperm velocity is low")
    elif metrics.vcl > config.high_velocity_threshold:
        notes.append("Sperm velocity is high")
    else:
        notes.append("Sperm velocity within normal range")

    return ". ".join(notes) + "."

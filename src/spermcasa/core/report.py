#!/usr/bin/env python3
"""
CASA analysis report: population metrics, interpretation and compact
detection/tracking summaries, serialisable to JSON and printable as text.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .analysis import TrackKinematics
from .common import CalibrationSettings, Detection, TrackRecord, path_length
from .interpretation import Interpretation
from .population import PopulationMetrics


@dataclass
class SummaryConfig:
    max_detection_frames: int = 10
    max_detections_per_frame: int = 5
    max_tracks: int = 20


class DetectionSummary:
    """
    Streaming summary of per-frame detections.

    Only counts are kept for every frame; full detections are kept for the
    first ``max_detection_frames`` frames, top ``max_detections_per_frame``
    by confidence.
    """

    def __init__(self, config: Optional[SummaryConfig] = None):
        self.config = config or SummaryConfig()
        self.total_frames = 0
        self.total_detections = 0
        self.frames: List[Dict[str, Any]] = []

    def add(self, frame_index: int, detections: Sequence[Detection]) -> None:
        self.total_frames += 1
        self.total_detections += len(detections)
        if len(self.frames) >= self.config.max_detection_frames:
            return
        top = sorted(detections, key=lambda d: -d.confidence)[
            : self.config.max_detections_per_frame
        ]
        self.frames.append(
            {
                "frame_index": int(frame_index),
                "detection_count": len(detections),
                "detections": [
                    {
                        "center_x": float(d.x),
                        "center_y": float(d.y),
                        "confidence": float(d.confidence),
                    }
                    for d in top
                ],
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        avg = self.total_detections / self.total_frames if self.total_frames else 0.0
        return {
            "total_frames": self.total_frames,
            "total_detections": self.total_detections,
            "average_detections_per_frame": avg,
            "detections_by_frame": list(self.frames),
        }


def summarize_tracks(
    records: Sequence[TrackRecord],
    kinematics: Sequence[TrackKinematics],
    calibration: CalibrationSettings,
    config: Optional[SummaryConfig] = None,
) -> Dict[str, Any]:
    config = config or SummaryConfig()
    lengths = [r.n_points for r in records]
    return {
        "total_tracks": len(records),
        "valid_tracks": sum(1 for k in kinematics if k.is_valid_for_analysis),
        "average_track_length": float(np.mean(lengths)) if lengths else 0.0,
        "longest_track": max(lengths) if lengths else 0,
        "track_summary": [
            {
                "track_id": r.track_id,
                "length": r.n_points,
                "total_distance_um": path_length(r.xy()) * calibration.microns_per_pixel,
                "start_frame": r.start_frame,
                "end_frame": r.end_frame,
            }
            for r in records[: config.max_tracks]
        ],
    }


def average_confidence(records: Sequence[TrackRecord]) -> Optional[float]:
    """Mean detection confidence over every position of every track."""
    confidences = [p.confidence for r in records for p in r.positions]
    return float(np.mean(confidences)) if confidences else None


@dataclass
class AnalysisReport:
    """
    Result of one analysis run.

    Per-track detail is capped: ``tracks`` holds at most ``max_tracks``
    confirmed tracks and ``to_dict`` emits at most ``max_tracks`` kinematics
    rows. ``kinematics`` keeps one fixed-size row per confirmed track.
    """

    metrics: PopulationMetrics
    interpretation: Interpretation
    interpretation_notes: str
    calibration: CalibrationSettings
    frames_analyzed: int
    frame_rate: float
    kinematics: List[TrackKinematics] = field(default_factory=list)
    tracks: List[TrackRecord] = field(default_factory=list, repr=False)
    detection_summary: Dict[str, Any] = field(default_factory=dict)
    tracking_summary: Dict[str, Any] = field(default_factory=dict)
    ai_confidence_average: Optional[float] = None
    analysis_duration_s: float = 0.0
    source_name: Optional[str] = None
    max_tracks: int = field(default=20, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_name": self.source_name,
            "interpretation": self.interpretation.label,
            "interpretation_code": self.interpretation.value,
            "interpretation_notes": self.interpretation_notes,
            "metrics": asdict(self.metrics),
            "calibration": asdict(self.calibration),
            "frames_analyzed": self.frames_analyzed,
            "frame_rate": self.frame_rate,
            "analysis_duration_s": self.analysis_duration_s,
            "ai_confidence_average": self.ai_confidence_average,
            "detection_summary": self.detection_summary,
            "tracking_summary": self.tracking_summary,
            "kinematics_total": len(self.kinematics),
            "kinematics": [asdict(k) for k in self.kinematics[: self.max_tracks]],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def _fmt(value: Optional[float], spec: str = ">7.2f") -> str:
    return format(value, spec) if value is not None else "    n/a"


def generate_report_text(report: AnalysisReport) -> str:
    """Generate formatted analysis report with all parameters."""
    m = report.metrics
    cal = report.calibration

    def pb(pct: float, width: int = 30) -> str:
        """Generate proportional progress bar."""
        filled = int(width * pct / 100)
        return "█" * filled + "░" * (width - filled)

    text = f"""
╔══════════════════════════════════════════════════════════════╗
║           SPERM MOTILITY ANALYSIS REPORT (CASA)              ║
║           WHO 2010 Reference Values                          ║
╚══════════════════════════════════════════════════════════════╝

📊 ANALYSIS PARAMETERS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Source:              {report.source_name or "-"}
  Pixel size:          {cal.microns_per_pixel} μm/pixel
  Frame rate:          {report.frame_rate} fps
  Frames analysed:     {report.frames_analyzed}
  Temperature:         {cal.temperature_c} °C
  Sample volume:       {m.sample_volume_ul:.4f} μL

🔬 COUNT
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Total sperm (confirmed tracks): {m.total_count}
  Tracked (valid for analysis):   {m.tracked_count}
  Concentration:                  {m.concentration:.3f} ×10⁶/mL
  Total motile sperm:             {m.total_motile_count:.1f}

📈 MOTILITY CLASSIFICATION
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Progressive (PR):     {m.progressive_motility:>6.2f}% {pb(m.progressive_motility)} ({m.progressive_count} tracks)
  Non-progressive (NP): {m.non_progressive_motility:>6.2f}% {pb(m.non_progressive_motility)} ({m.non_progressive_count} tracks)
  Immotile (IM):        {m.immotile_percent:>6.2f}% {pb(m.immotile_percent)} ({m.immotile_count} tracks)
  Total motility:       {m.total_motility:>6.2f}%

⚡ VELOCITY PARAMETERS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  VCL (Curvilinear):    {_fmt(m.vcl)} μm/s
  VSL (Straight-line):  {_fmt(m.vsl)} μm/s
  VAP (Average path):   {_fmt(m.vap)} μm/s
  LIN:                  {_fmt(m.lin, ">7.3f")}
  STR:                  {_fmt(m.str, ">7.3f")}
  WOB:                  {_fmt(m.wob, ">7.3f")}
  ALH:                  {_fmt(m.alh)} μm
  BCF:                  {_fmt(m.bcf)} Hz

🩺 INTERPRETATION
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Result: {report.interpretation.label}
  {report.interpretation_notes}

"""
    return text

"""
spermcasa - computer-assisted sperm analysis (CASA) from microscopy video.
"""

from .core.common import CalibrationSettings, Detection
from .core.interpretation import Interpretation
from .core.pipeline import (
    AnalysisCancelled,
    AnalysisConfig,
    AnalysisFailed,
    AnalysisJob,
    CancellationToken,
    analyze_detections,
    run_analysis,
)
from .core.report import AnalysisReport

__version__ = "0.1.0"

__all__ = [
    "AnalysisCancelled",
    "AnalysisConfig",
    "AnalysisFailed",
    "AnalysisJob",
    "AnalysisReport",
    "CalibrationSettings",
    "CancellationToken",
    "Detection",
    "Interpretation",
    "analyze_detections",
    "run_analysis",
]

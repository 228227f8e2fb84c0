"""
Core package for CASA sperm motility analysis.

Modules:
    detect: Per-frame sperm detection (contour and YOLO/ONNX detectors)
    tracker: Multi-frame identity tracking
    analysis: Per-track kinematics (VCL, VSL, VAP, LIN, STR, WOB, ALH, BCF)
    population: Population aggregation and motility classes
    interpretation: WHO reference interpretation and notes
    report: Analysis report and text rendering
    pipeline: End-to-end run with progress and cancellation
    visualization: Track overview and velocity histograms
    common: Shared utilities and data structures
"""

__all__ = [
    "common",
    "detect",
    "tracker",
    "analysis",
    "population",
    "interpretation",
    "report",
    "pipeline",
    "visualization",
]

"""
Common package for the CASA core - shared utilities across all modules.

Submodules:
    data_structures: Frames, detections, track snapshots and calibration
    errors: Exception types
    io: Frame sources (video, TIFF, in-memory)
    math_utils: Mathematical algorithms and functions
"""

from .data_structures import (
    CalibrationSettings,
    Detection,
    Frame,
    TrackPoint,
    TrackRecord,
)
from .errors import DetectorError, FrameOrderError, InputError
from .io import (
    ArrayFrameSource,
    FrameSource,
    TiffFrameSource,
    VideoFrameSource,
    load_movie,
    open_frame_source,
)
from .math_utils import (
    calculate_distances,
    centered_moving_average,
    compute_iou,
    count_sign_changes,
    lateral_deviation,
    path_length,
    safe_ratio,
)

__all__ = [
    "CalibrationSettings",
    "Detection",
    "Frame",
    "TrackPoint",
    "TrackRecord",
    "DetectorError",
    "FrameOrderError",
    "InputError",
    "ArrayFrameSource",
    "FrameSource",
    "TiffFrameSource",
    "VideoFrameSource",
    "load_movie",
    "open_frame_source",
    "calculate_distances",
    "centered_moving_average",
    "compute_iou",
    "count_sign_changes",
    "lateral_deviation",
    "path_length",
    "safe_ratio",
]

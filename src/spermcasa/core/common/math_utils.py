#!/usr/bin/env python3
"""
Mathematical utilities shared by the detector, tracker and kinematics code.
"""

from typing import Optional, Tuple

import numpy as np


def calculate_distances(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Calculate Euclidean distances between consecutive points."""
    dx = np.diff(x)
    dy = np.diff(y)
    return np.sqrt(dx**2 + dy**2)


def path_length(points: np.ndarray) -> float:
    """Total length of a polyline given as an (N, 2) array."""
    if len(points) < 2:
        return 0.0
    return float(np.sum(calculate_distances(points[:, 0], points[:, 1])))


def compute_iou(
    bbox1: Tuple[float, float, float, float],
    bbox2: Tuple[float, float, float, float],
) -> float:
    """Compute IoU between two bboxes: (x, y, w, h)"""
    x1, y1, w1, h1 = bbox1
    x2, y2, w2, h2 = bbox2

    # Intersection
    ixmin = max(x1, x2)
    iymin = max(y1, y2)
    ixmax = min(x1 + w1, x2 + w2)
    iymax = min(y1 + h1, y2 + h2)
    iw = max(0, ixmax - ixmin)
    ih = max(0, iymax - iymin)

    # Union
    area1 = w1 * h1
    area2 = w2 * h2
    union = area1 + area2 - (iw * ih)

    return (iw * ih) / union if union > 0 else 0.0


def centered_moving_average(points: np.ndarray, window_size: int) -> np.ndarray:
    """
    Smooth an (N, 2) trajectory with a centred moving average.

    The window shrinks symmetrically near both ends, so the first and last
    points are kept and a constant-velocity line is reproduced exactly.
    """
    n = len(points)
    if n < 3 or window_size < 2:
        return points.astype(float, copy=True)

    half = window_size // 2
    csum = np.vstack([np.zeros((1, 2)), np.cumsum(points, axis=0)])
    out = np.empty((n, 2), dtype=float)
    for i in range(n):
        h = min(half, i, n - 1 - i)
        lo, hi = i - h, i + h + 1
        out[i] = (csum[hi] - csum[lo]) / (hi - lo)
    return out


def lateral_deviation(raw: np.ndarray, smooth: np.ndarray) -> np.ndarray:
    """
    Signed perpendicular distance of each raw point from the smoothed path.

    The local direction of the smoothed path is taken from its gradient;
    where the smoothed path is stationary the deviation is 0.
    """
    if len(raw) < 2:
        return np.zeros(len(raw), dtype=float)

    tangent = np.gradient(smooth, axis=0)
    norms = np.linalg.norm(tangent, axis=1)
    moving = norms > 1e-12

    normal = np.zeros_like(tangent)
    normal[moving, 0] = -tangent[moving, 1] / norms[moving]
    normal[moving, 1] = tangent[moving, 0] / norms[moving]

    return np.einsum("ij,ij->i", raw - smooth, normal)


def count_sign_changes(values: np.ndarray, tolerance: float = 1e-9) -> int:
    """Number of sign flips, ignoring values within ``tolerance`` of zero."""
    signs = np.sign(values[np.abs(values) > tolerance])
    if len(signs) < 2:
        return 0
    return int(np.count_nonzero(signs[1:] != signs[:-1]))


def safe_ratio(
    numerator: Optional[float], denominator: Optional[float]
) -> Optional[float]:
    """numerator / denominator clamped to [0, 1]; None when undefined."""
    if numerator is None or denominator is None or denominator <= 0:
        return None
    return float(np.clip(numerator / denominator, 0.0, 1.0))

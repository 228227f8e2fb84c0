#!/usr/bin/env python3
"""
Multi-frame sperm tracker.

Associates independent per-frame detections into persistent tracks with a
constant-velocity motion model (Kalman filter or linear extrapolation),
gated Euclidean costs and minimum-cost bipartite matching.

Track lifecycle:
    TENTATIVE --min_hits consecutive matches--> CONFIRMED
    TENTATIVE --any miss--> TERMINATED
    CONFIRMED --miss--> LOST --match--> CONFIRMED
    LOST --max_misses consecutive misses--> TERMINATED
    any live state --end of stream--> TERMINATED

Tracks are stored in an arena (``tracks[track_id]``); the live set is a list
of track ids, so snapshots handed to later stages never alias tracker state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from filterpy.kalman import KalmanFilter
from numba import njit
from scipy.optimize import linear_sum_assignment
from scipy.spatial import cKDTree

from .common import Detection, FrameOrderError, TrackPoint, TrackRecord

logger = logging.getLogger(__name__)

# cost assigned to gated-out pairs; finite so the Hungarian solver stays feasible
_GATED_COST = 1e6


@njit
def _greedy_numba(trk, det, n_trk, n_det):
    """
    Greedy assignment over candidate pairs already sorted by cost.

    Args:
        trk: Array of track indices
        det: Array of detection indices
        n_trk: Total number of tracks
        n_det: Total number of detections

    Returns:
        Tuple of (track_indices, detection_indices) for valid assignments
    """
    used_trk = np.zeros(n_trk, np.bool_)
    used_det = np.zeros(n_det, np.bool_)
    ti, dj = [], []
    for t, d in zip(trk, det):
        if not used_trk[t] and not used_det[d]:
            ti.append(t)
            dj.append(d)
            used_trk[t] = True
            used_det[d] = True
    return np.array(ti, dtype=np.intp), np.array(dj, dtype=np.intp)


@dataclass
class TrackerConfig:
    min_hits: int = 3
    max_misses: int = 5

    gating_distance: float = 30.0  # pixels
    min_confidence: float = 0.5

    use_kalman: bool = True
    assignment_mode: str = "hungarian"  # or "greedy"

    kalman_measurement_noise: float = 1.0
    kalman_process_noise: float = 0.01
    kalman_initial_velocity_variance: float = 100.0

    def validate(self) -> None:
        if self.min_hits < 1:
            raise ValueError("min_hits must be >= 1")
        if self.max_misses < 1:
            raise ValueError("max_misses must be >= 1")
        if self.gating_distance <= 0:
            raise ValueError("gating_distance must be > 0")
        if self.assignment_mode not in ("hungarian", "greedy"):
            raise ValueError(f"Unknown assignment_mode: {self.assignment_mode}")


class TrackState:
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    LOST = "lost"
    TERMINATED = "terminated"


def _transition(dt: float) -> np.ndarray:
    return np.array(
        [[1, 0, dt, 0], [0, 1, 0, dt], [0, 0, 1, 0], [0, 0, 0, 1]], dtype=float
    )


class Track:
    def __init__(self, track_id: int, det: Detection, cfg: TrackerConfig):
        self.id = track_id
        self.cfg = cfg
        self.history: List[TrackPoint] = []
        self.state: str = TrackState.TENTATIVE
        self.hits: int = 0
        self.missing: int = 0
        self.confirmed: bool = False
        self.termination_reason: Optional[str] = None
        self.kf: Optional[KalmanFilter] = (
            self._init_kalman(det.x, det.y) if cfg.use_kalman else None
        )
        self.append(det)

    def _init_kalman(self, x: float, y: float) -> KalmanFilter:
        kf = KalmanFilter(dim_x=4, dim_z=2)
        kf.x = np.array([x, y, 0.0, 0.0])
        kf.F = _transition(1.0)
        kf.H = np.array([[1, 0, 0, 0], [0, 1, 0, 0]], dtype=float)
        kf.R = np.eye(2) * self.cfg.kalman_measurement_noise
        kf.P = np.diag(
            [
                self.cfg.kalman_measurement_noise,
                self.cfg.kalman_measurement_noise,
                self.cfg.kalman_initial_velocity_variance,
                self.cfg.kalman_initial_velocity_variance,
            ]
        )
        kf.Q = np.eye(4) * self.cfg.kalman_process_noise
        return kf

    @property
    def last_frame(self) -> int:
        return self.history[-1].frame

    def last_position(self) -> np.ndarray:
        p = self.history[-1]
        return np.array([p.x, p.y])

    def velocity(self) -> np.ndarray:
        """Current velocity estimate in pixels/frame."""
        if self.kf is not None:
            return np.array(self.kf.x[2:4], dtype=float)
        if len(self.history) < 2:
            return np.zeros(2)
        p0, p1 = self.history[-2], self.history[-1]
        gap = p1.frame - p0.frame
        return np.array([(p1.x - p0.x) / gap, (p1.y - p0.y) / gap])

    def predict(self, frame: int) -> np.ndarray:
        """Expected position at ``frame`` under constant velocity."""
        dt = float(frame - self.last_frame)
        if self.kf is not None:
            return (_transition(dt) @ self.kf.x)[:2]
        return self.last_position() + self.velocity() * dt

    def append(self, det: Detection):
        if self.kf is not None and self.history:
            dt = float(det.frame - self.last_frame)
            self.kf.predict(F=_transition(dt), Q=self.kf.Q * dt)
            self.kf.update(np.array([det.x, det.y]))
        self.history.append(TrackPoint(det.frame, det.x, det.y, det.confidence))
        self.hits += 1
        self.missing = 0

        if self.state == TrackState.LOST:
            self.state = TrackState.CONFIRMED
        elif self.state == TrackState.TENTATIVE and self.hits >= self.cfg.min_hits:
            self.state = TrackState.CONFIRMED
            self.confirmed = True

    def mark_missing(self):
        if self.state == TrackState.TENTATIVE:
            self.terminate("tentative_miss")
            return

        self.missing += 1
        self.hits = 0
        self.state = TrackState.LOST
        if self.missing >= self.cfg.max_misses:
            self.terminate("max_misses")

    def terminate(self, reason: str):
        self.state = TrackState.TERMINATED
        self.termination_reason = reason

    def snapshot(self) -> TrackRecord:
        return TrackRecord(
            track_id=self.id,
            positions=tuple(self.history),
            start_frame=self.history[0].frame,
            end_frame=self.history[-1].frame + 1,
            state=self.state,
            confirmed=self.confirmed,
            termination_reason=self.termination_reason,
        )


class SpermTracker:
    """Single-writer tracker. One instance per analysis run."""

    def __init__(self, cfg: Optional[TrackerConfig] = None):
        self.cfg = cfg or TrackerConfig()
        self.cfg.validate()
        self.tracks: List[Track] = []
        self._active: List[int] = []
        self._last_frame: Optional[int] = None

    @property
    def next_id(self) -> int:
        return len(self.tracks)

    @property
    def active_ids(self) -> Tuple[int, ...]:
        return tuple(self._active)

    def update(self, frame: int, detections: Sequence[Detection]) -> List[TrackRecord]:
        """
        Associate one frame of detections.

        Args:
            frame: frame index, strictly greater than the previous one
            detections: candidate detections for this frame

        Returns:
            Snapshots of tracks terminated during this step
        """
        if self._last_frame is not None and frame <= self._last_frame:
            raise FrameOrderError(
                f"Frame {frame} delivered after frame {self._last_frame}"
            )
        self._last_frame = frame

        dets = [d for d in detections if d.confidence >= self.cfg.min_confidence]
        if not dets and not self._active:
            return []

        active = [self.tracks[tid] for tid in self._active]
        C = self._build_cost_matrix(active, dets, frame)
        trk_idx, det_idx = self._assign(C)

        assigned_trk = set()
        assigned_det = set()
        for i, j in zip(trk_idx, det_idx):
            if C[i, j] > self.cfg.gating_distance:
                continue
            active[i].append(dets[j])
            assigned_trk.add(int(i))
            assigned_det.add(int(j))

        finished = []
        for i, trk in enumerate(active):
            if i in assigned_trk:
                continue
            trk.mark_missing()
            if trk.state == TrackState.TERMINATED:
                logger.debug(
                    "Track %d terminated at frame %d (%s)",
                    trk.id,
                    frame,
                    trk.termination_reason,
                )
                finished.append(trk.snapshot())

        self._active = [
            tid for tid in self._active if self.tracks[tid].state != TrackState.TERMINATED
        ]

        for j, det in enumerate(dets):
            if j not in assigned_det:
                self._spawn(det)

        return finished

    def finalize(self) -> List[TrackRecord]:
        """Terminate every live track (end of stream)."""
        finished = []
        for tid in self._active:
            trk = self.tracks[tid]
            trk.terminate("end_of_stream")
            finished.append(trk.snapshot())
        self._active = []
        return finished

    def records(self) -> List[TrackRecord]:
        """Snapshots of all tracks, in every state, ordered by track id."""
        return [t.snapshot() for t in self.tracks]

    def confirmed_records(self) -> List[TrackRecord]:
        return [t.snapshot() for t in self.tracks if t.confirmed]

    def _spawn(self, det: Detection):
        new_track = Track(self.next_id, det, self.cfg)
        self.tracks.append(new_track)
        self._active.append(new_track.id)

    def _build_cost_matrix(
        self, active: List[Track], detections: List[Detection], frame: int
    ) -> np.ndarray:
        n_trk = len(active)
        n_det = len(detections)
        C = np.full((n_trk, n_det), _GATED_COST)
        if n_trk == 0 or n_det == 0:
            return C

        detection_positions = np.array([[d.x, d.y] for d in detections])
        detection_tree = cKDTree(detection_positions)

        for i, trk in enumerate(active):
            r = trk.predict(frame)
            for j in detection_tree.query_ball_point(r, self.cfg.gating_distance):
                C[i, j] = float(np.linalg.norm(detection_positions[j] - r))
        return C

    def _assign(self, C: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        empty = (np.array([], dtype=int), np.array([], dtype=int))
        if C.size == 0 or not np.any(C <= self.cfg.gating_distance):
            return empty
        if self.cfg.assignment_mode == "greedy":
            return self._greedy_assignment(C)
        return linear_sum_assignment(C)

    def _greedy_assignment(self, C: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        n_trk, n_det = C.shape
        valid_mask = C <= self.cfg.gating_distance
        trk, det = np.where(valid_mask)
        order = np.argsort(C[valid_mask], kind="stable")
        return _greedy_numba(trk[order], det[order], n_trk, n_det)


def run_tracking(
    frame_detections: Iterable[Tuple[int, Sequence[Detection]]],
    cfg: Optional[TrackerConfig] = None,
) -> SpermTracker:
    """Feed (frame, detections) pairs through a fresh tracker and finalise it."""
    tracker = SpermTracker(cfg)
    for frame, dets in frame_detections:
        tracker.update(frame, dets)
    tracker.finalize()
    return tracker


def tracks_to_dataframe(records: Sequence[TrackRecord]) -> pd.DataFrame:
    """One row per track position."""
    rows = []
    for rec in records:
        for i, p in enumerate(rec.positions):
            rows.append(
                {
                    "track_id": rec.track_id,
                    "frame": p.frame,
                    "x": p.x,
                    "y": p.y,
                    "confidence": p.confidence,
                    "accumulated_length": i + 1,
                    "track_length": rec.n_points,
                    "confirmed": rec.confirmed,
                    "termination_reason": rec.termination_reason,
                }
            )
    columns = [
        "track_id",
        "frame",
        "x",
        "y",
        "confidence",
        "accumulated_length",
        "track_length",
        "confirmed",
        "termination_reason",
    ]
    return pd.DataFrame(rows, columns=columns)

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from spermcasa.core.common import Detection, Frame, TrackPoint, TrackRecord
from spermcasa.core.detect import Detector


def moving_point(
    frames: Iterable[int],
    x0: float = 10.0,
    y0: float = 50.0,
    vx: float = 2.0,
    vy: float = 0.0,
    confidence: float = 0.9,
) -> Dict[int, Detection]:
    """One detection per frame on a constant-velocity path."""
    return {
        f: Detection(frame=f, x=x0 + vx * f, y=y0 + vy * f, confidence=confidence)
        for f in frames
    }


def merge_streams(
    n_frames: int, *streams: Dict[int, Detection]
) -> List[Tuple[int, List[Detection]]]:
    """(frame, detections) pairs for frames 0..n_frames-1, including empty frames."""
    out = []
    for f in range(n_frames):
        out.append((f, [s[f] for s in streams if f in s]))
    return out


def make_record(
    xy: Sequence[Tuple[float, float]],
    start_frame: int = 0,
    track_id: int = 0,
    confidence: float = 0.9,
) -> TrackRecord:
    positions = tuple(
        TrackPoint(start_frame + i, float(x), float(y), confidence)
        for i, (x, y) in enumerate(xy)
    )
    return TrackRecord(
        track_id=track_id,
        positions=positions,
        start_frame=start_frame,
        end_frame=start_frame + len(positions),
        state="terminated",
        confirmed=True,
        termination_reason="end_of_stream",
    )


class ScriptedDetector(Detector):
    """Returns precomputed detections per frame index, ignoring pixels."""

    def __init__(
        self,
        by_frame: Dict[int, List[Detection]],
        on_frame: Optional[Callable[[int], None]] = None,
    ):
        self.by_frame = by_frame
        self.on_frame = on_frame

    def detect(self, frame: Frame) -> List[Detection]:
        if self.on_frame is not None:
            self.on_frame(frame.index)
        return list(self.by_frame.get(frame.index, []))


def blank_stack(n_frames: int, height: int = 32, width: int = 32) -> np.ndarray:
    return np.zeros((n_frames, height, width), dtype=np.uint8)

#!/usr/bin/env python3
"""
Frame sources: decode videos, TIFF stacks or in-memory arrays into a stream
of timestamped frames in increasing index order.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Optional, Union

import cv2
import numpy as np
import tifffile as tiff

from .data_structures import Frame
from .errors import InputError

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".mkv"}
TIFF_EXTENSIONS = {".tif", ".tiff"}
SUPPORTED_EXTENSIONS = VIDEO_EXTENSIONS | TIFF_EXTENSIONS


def _sampled_indices(
    total: int,
    start_frame: int = 0,
    end_frame: Optional[int] = None,
    max_frames: Optional[int] = None,
) -> List[int]:
    """
    Source frame indices to decode.

    With ``max_frames`` set, frames are spread evenly over [start, end) using
    an integer step, so long videos are subsampled rather than truncated.
    """
    end = total if end_frame is None else min(end_frame, total)
    start = max(0, start_frame)
    if end <= start:
        return []
    step = 1
    if max_frames is not None and max_frames > 0:
        step = max(1, (end - start) // max_frames)
    indices = list(range(start, end, step))
    if max_frames is not None and max_frames > 0:
        indices = indices[:max_frames]
    return indices


class FrameSource:
    """Base class for frame sources. Iterating yields :class:`Frame` objects."""

    fps: Optional[float] = None
    name: str = "frames"

    def __iter__(self) -> Iterator[Frame]:
        raise NotImplementedError

    @property
    def expected_frames(self) -> Optional[int]:
        """Number of frames the source expects to yield, if known."""
        return None

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def _timestamp(self, index: int) -> float:
        return index / self.fps if self.fps else float(index)


class ArrayFrameSource(FrameSource):
    """Frames from a (T, H, W) or (T, H, W, C) numpy stack."""

    def __init__(
        self,
        stack: np.ndarray,
        fps: Optional[float] = None,
        start_frame: int = 0,
        end_frame: Optional[int] = None,
        max_frames: Optional[int] = None,
        name: str = "array",
    ):
        stack = np.asarray(stack)
        if stack.ndim == 2:
            stack = stack[None, ...]
        if stack.ndim not in (3, 4):
            raise InputError(f"Unexpected frame stack shape: {stack.shape}")
        self._stack = stack
        self.fps = fps
        self.name = name
        self._indices = _sampled_indices(
            stack.shape[0], start_frame, end_frame, max_frames
        )

    @property
    def expected_frames(self) -> int:
        return len(self._indices)

    def __iter__(self) -> Iterator[Frame]:
        for idx in self._indices:
            yield Frame(idx, self._timestamp(idx), self._stack[idx])


class TiffFrameSource(ArrayFrameSource):
    """Grayscale multi-page TIFF stack."""

    def __init__(self, path: Union[str, Path], fps: Optional[float] = None, **kwargs):
        path = Path(path)
        if not path.exists():
            raise InputError(f"Input file does not exist: {path}")
        try:
            img = tiff.imread(str(path))
        except Exception as e:
            raise InputError(f"Could not read TIFF file {path}: {e}") from e

        if img.ndim == 2:
            img = img[None, ...]
        if img.ndim == 4 and img.shape[-1] in (3, 4):
            raise InputError(
                f"Input must be grayscale TIFF, got color image with {img.shape[-1]} channels"
            )
        if img.size == 0:
            raise InputError(f"TIFF file contains no frames: {path}")

        super().__init__(img.astype(np.uint8), fps=fps, name=path.stem, **kwargs)


class VideoFrameSource(FrameSource):
    """Streams frames from a video file with OpenCV (MP4/AVI/MOV/MKV)."""

    def __init__(
        self,
        path: Union[str, Path],
        grayscale: bool = True,
        start_frame: int = 0,
        end_frame: Optional[int] = None,
        max_frames: Optional[int] = None,
    ):
        self.path = Path(path)
        self.name = self.path.stem
        self.grayscale = grayscale
        if not self.path.exists():
            raise InputError(f"Input file does not exist: {self.path}")

        self._cap = cv2.VideoCapture(str(self.path))
        if not self._cap.isOpened():
            self.close()
            raise InputError(f"Could not open video file: {self.path}")

        fps = self._cap.get(cv2.CAP_PROP_FPS)
        self.fps = float(fps) if fps and fps > 0 else None
        self.frame_count = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT))
        if self.frame_count <= 0:
            self.close()
            raise InputError(f"Video reports no frames: {self.path}")

        self._indices = _sampled_indices(
            self.frame_count, start_frame, end_frame, max_frames
        )
        logger.info(
            "[Video Info] %s - FPS: %s, Frames: %d, Selected: %d",
            self.path.name,
            f"{self.fps:.1f}" if self.fps else "unknown",
            self.frame_count,
            len(self._indices),
        )

    @property
    def expected_frames(self) -> int:
        return len(self._indices)

    def __iter__(self) -> Iterator[Frame]:
        if self._cap is None:
            raise InputError(f"Video source already closed: {self.path}")
        if not self._indices:
            return

        wanted = set(self._indices)
        last = self._indices[-1]
        self._cap.set(cv2.CAP_PROP_POS_FRAMES, self._indices[0])
        pos = self._indices[0]
        read = 0
        while pos <= last:
            if pos in wanted:
                ret, frame = self._cap.read()
                if not ret:
                    break
                if self.grayscale and frame.ndim == 3:
                    frame = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
                read += 1
                yield Frame(pos, self._timestamp(pos), frame)
            elif not self._cap.grab():
                break
            pos += 1

        if read != len(self._indices):
            logger.warning(
                "Only read %d/%d frames from video %s",
                read,
                len(self._indices),
                self.path.name,
            )

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


def open_frame_source(
    path: Union[str, Path], fps: Optional[float] = None, **kwargs
) -> FrameSource:
    """Pick a frame source by file extension."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in VIDEO_EXTENSIONS:
        return VideoFrameSource(path, **kwargs)
    if suffix in TIFF_EXTENSIONS:
        return TiffFrameSource(path, fps=fps, **kwargs)
    raise InputError(f"Unsupported input extension: {path.suffix}")


def load_movie(path: Union[str, Path]) -> np.ndarray:
    """Return 3-D array (T, Y, X) even for single-frame files."""
    with open_frame_source(path) as source:
        frames = [f.pixels for f in source]
    if not frames:
        raise InputError(f"No frames could be read from {path}")
    stack = np.array(frames)
    if stack.ndim == 4:
        stack = np.array([cv2.cvtColor(f, cv2.COLOR_BGR2GRAY) for f in stack])
    return stack.astype(np.uint8)

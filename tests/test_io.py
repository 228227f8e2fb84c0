from __future__ import annotations

import cv2
import numpy as np
import pytest
import tifffile

from spermcasa.core.common import (
    ArrayFrameSource,
    InputError,
    TiffFrameSource,
    VideoFrameSource,
    load_movie,
    open_frame_source,
)


def test_array_source_yields_increasing_frames_with_timestamps():
    source = ArrayFrameSource(np.zeros((5, 8, 8), np.uint8), fps=25.0)
    frames = list(source)

    assert [f.index for f in frames] == [0, 1, 2, 3, 4]
    assert frames[2].timestamp == pytest.approx(0.08)
    assert source.expected_frames == 5


def test_array_source_even_sampling():
    source = ArrayFrameSource(np.zeros((100, 4, 4), np.uint8), max_frames=10)
    assert [f.index for f in source] == list(range(0, 100, 10))


def test_array_source_window():
    source = ArrayFrameSource(np.zeros((20, 4, 4), np.uint8), start_frame=5, end_frame=8)
    assert [f.index for f in source] == [5, 6, 7]


def test_array_source_rejects_bad_shape():
    with pytest.raises(InputError):
        ArrayFrameSource(np.zeros(4))


def test_tiff_source_reads_stack(tmp_path):
    path = tmp_path / "movie.tif"
    stack = np.random.default_rng(1).integers(0, 255, size=(6, 16, 16), dtype=np.uint8)
    tifffile.imwrite(str(path), stack)

    with open_frame_source(path, fps=30.0) as source:
        assert isinstance(source, TiffFrameSource)
        frames = list(source)

    assert len(frames) == 6
    assert source.name == "movie"
    np.testing.assert_array_equal(frames[3].pixels, stack[3])
    np.testing.assert_array_equal(load_movie(path), stack)


def test_tiff_source_rejects_color(tmp_path):
    path = tmp_path / "color.tif"
    tifffile.imwrite(str(path), np.zeros((3, 8, 8, 3), np.uint8))
    with pytest.raises(InputError):
        TiffFrameSource(path)


def test_missing_and_unsupported_inputs(tmp_path):
    with pytest.raises(InputError):
        open_frame_source(tmp_path / "nope.tif")
    with pytest.raises(InputError):
        open_frame_source(tmp_path / "nope.avi")
    with pytest.raises(InputError):
        open_frame_source(tmp_path / "clip.gif")


def test_corrupt_video_is_input_error(tmp_path):
    path = tmp_path / "broken.mp4"
    path.write_bytes(b"not really a video")
    with pytest.raises(InputError):
        VideoFrameSource(path)


def test_video_source_roundtrip(tmp_path):
    path = tmp_path / "clip.avi"
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 20.0, (32, 24))
    if not writer.isOpened():
        pytest.skip("MJPG writer not available")
    for i in range(12):
        frame = np.full((24, 32, 3), i * 10, dtype=np.uint8)
        writer.write(frame)
    writer.release()

    with VideoFrameSource(path, max_frames=4) as source:
        assert source.fps == pytest.approx(20.0)
        frames = list(source)

    assert [f.index for f in frames] == [0, 3, 6, 9]
    assert frames[0].pixels.ndim == 2

#!/usr/bin/env python3
"""
Per-frame sperm detectors.

Every detector turns one :class:`Frame` into a list of :class:`Detection`
objects and has no memory across frames. Two implementations are provided:

* ``ContourDetector`` - threshold + contour morphology on grayscale frames
  (area, aspect ratio and solidity filters).
* ``OnnxYoloDetector`` - a YOLO-style ONNX model run through onnxruntime,
  decoded and de-duplicated with non-maximum suppression.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import pandas as pd

from .common import Detection, DetectorError, Frame, compute_iou

logger = logging.getLogger(__name__)

DETECTION_COLUMNS = [
    "frame",
    "x",
    "y",
    "width",
    "height",
    "confidence",
    "class_label",
    "area",
]


class Detector:
    """Interface: ``detect(frame) -> List[Detection]``."""

    def detect(self, frame: Frame) -> List[Detection]:
        raise NotImplementedError


@dataclass
class DetectionConfig:
    min_area: float = 20
    max_area: float = 45
    min_aspect: float = 1.2
    max_aspect: float = 3.0
    min_solidity: float = 0.65
    threshold: int = 10
    blur_radius: float = 0.5

    def validate(self) -> None:
        if self.min_area >= self.max_area:
            raise ValueError("min_area must be < max_area")
        if self.min_aspect >= self.max_aspect:
            raise ValueError("min_aspect must be < max_aspect")
        if self.blur_radius < 0:
            raise ValueError("blur_radius must be >= 0")


def _is_image_binarized(img: np.ndarray, tolerance: int = 1) -> bool:
    """
    Check if an image is already binarized by examining its unique pixel values.

    Args:
        img: Input image as numpy array
        tolerance: Tolerance for considering values as binary

    Returns:
        True if image appears to be binarized, False otherwise
    """
    unique_values = np.unique(img)

    if len(unique_values) <= 2:
        return True

    # Values close to 0 or 255 still count as binary (compression artefacts)
    binary_like = [
        v
        for v in unique_values
        if abs(int(v)) <= tolerance or abs(int(v) - 255) <= tolerance
    ]
    return len(binary_like) >= len(unique_values) * 0.95


class ContourDetector(Detector):
    """
    Detect sperm heads in a grayscale or binary frame using morphological
    criteria. Already-binarized frames skip thresholding.
    """

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DetectionConfig()
        self.config.validate()

    def detect(self, frame: Frame) -> List[Detection]:
        img = frame.pixels
        if not isinstance(img, np.ndarray):
            raise TypeError("Input image must be a numpy array")
        if img.ndim == 3:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        if img.ndim != 2:
            raise ValueError(f"Each frame must be 2D, got shape {img.shape}")
        if img.dtype != np.uint8:
            img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX, dtype=cv2.CV_8U)

        cfg = self.config
        if cfg.blur_radius > 0:
            k = int(cfg.blur_radius * 2 + 1) | 1  # kernel size must be odd
            img = cv2.GaussianBlur(img, (k, k), 0)

        if _is_image_binarized(img):
            binary = np.where(img > 0, 255, 0).astype(np.uint8)
        else:
            _, binary = cv2.threshold(img, cfg.threshold, 255, cv2.THRESH_BINARY)

        contours, _ = cv2.findContours(
            binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE
        )

        detections = []
        for cnt in contours:
            area = cv2.contourArea(cnt)
            if area < cfg.min_area or area > cfg.max_area:
                continue

            (_, (rw, rh), _) = cv2.minAreaRect(cnt)
            if rw == 0 or rh == 0:
                continue
            aspect = max(rw, rh) / min(rw, rh)
            if aspect < cfg.min_aspect or aspect > cfg.max_aspect:
                continue

            hull_area = cv2.contourArea(cv2.convexHull(cnt))
            if hull_area == 0:
                continue
            if area / hull_area < cfg.min_solidity:
                continue

            moments = cv2.moments(cnt)
            if not moments["m00"]:
                continue
            cx = moments["m10"] / moments["m00"]
            cy = moments["m01"] / moments["m00"]
            _, _, bw, bh = cv2.boundingRect(cnt)

            detections.append(
                Detection(
                    frame=frame.index,
                    x=float(cx),
                    y=float(cy),
                    width=float(bw),
                    height=float(bh),
                    confidence=1.0,
                    class_label=0,
                    area=float(area),
                )
            )

        # contour order from OpenCV is not spatially meaningful; sort for stable output
        detections.sort(key=lambda d: (d.y, d.x))
        return detections


# ---------------------- YOLO / ONNX ----------------------


def non_max_suppression(
    boxes: np.ndarray, scores: np.ndarray, iou_threshold: float
) -> List[int]:
    """
    Greedy class-agnostic NMS.

    Args:
        boxes: (N, 4) array of centre-format boxes (cx, cy, w, h)
        scores: (N,) confidences
        iou_threshold: boxes overlapping a kept box above this IoU are dropped

    Returns:
        Indices of kept boxes, highest score first
    """
    order = list(np.argsort(-np.asarray(scores), kind="stable"))
    keep: List[int] = []
    tl = [(b[0] - b[2] / 2, b[1] - b[3] / 2, b[2], b[3]) for b in boxes]
    while order:
        best = order.pop(0)
        keep.append(int(best))
        order = [i for i in order if compute_iou(tl[best], tl[i]) <= iou_threshold]
    return keep


def decode_yolo_output(
    output: np.ndarray,
    frame_index: int,
    image_size: Tuple[int, int],
    input_size: int = 640,
    confidence_threshold: float = 0.5,
    nms_threshold: float = 0.4,
    layout: str = "yolov5",
) -> List[Detection]:
    """
    Decode raw YOLO output into detections in original image coordinates.

    Args:
        output: model output, (1, N, 5 + C) for ``yolov5`` layout
            (cx, cy, w, h, objectness, class scores...) or (1, 4 + C, N)
            for ``yolov8`` layout (no objectness column)
        frame_index: index stamped onto each detection
        image_size: original (width, height)
        input_size: square model input size
        confidence_threshold: minimum final confidence
        nms_threshold: IoU threshold for suppression
        layout: "yolov5" or "yolov8"
    """
    arr = np.asarray(output, dtype=np.float32)
    if arr.ndim == 3:
        arr = arr[0]
    if arr.ndim != 2:
        raise DetectorError(f"Unexpected YOLO output shape: {np.shape(output)}")

    if layout == "yolov8":
        arr = arr.T
        boxes = arr[:, :4]
        class_scores = arr[:, 4:]
        if class_scores.shape[1] == 0:
            raise DetectorError("YOLOv8 output has no class columns")
        class_ids = np.argmax(class_scores, axis=1)
        conf = class_scores[np.arange(len(arr)), class_ids]
    elif layout == "yolov5":
        boxes = arr[:, :4]
        objectness = arr[:, 4]
        class_scores = arr[:, 5:]
        if class_scores.shape[1] == 0:
            class_ids = np.zeros(len(arr), dtype=int)
            conf = objectness
        else:
            class_ids = np.argmax(class_scores, axis=1)
            conf = objectness * class_scores[np.arange(len(arr)), class_ids]
            conf = np.where(objectness > confidence_threshold, conf, 0.0)
    else:
        raise ValueError(f"Unknown YOLO layout: {layout}")

    mask = conf > confidence_threshold
    boxes, conf, class_ids = boxes[mask], conf[mask], class_ids[mask]
    if len(boxes) == 0:
        return []

    keep = non_max_suppression(boxes, conf, nms_threshold)

    width, height = image_size
    sx = width / float(input_size)
    sy = height / float(input_size)
    detections = []
    for i in keep:
        cx, cy, w, h = boxes[i]
        detections.append(
            Detection(
                frame=frame_index,
                x=float(cx * sx),
                y=float(cy * sy),
                width=float(w * sx),
                height=float(h * sy),
                confidence=float(conf[i]),
                class_label=int(class_ids[i]),
                area=float(w * sx * h * sy),
            )
        )
    return detections


class OnnxYoloDetector(Detector):
    """YOLO-style detector run through an onnxruntime inference session."""

    def __init__(
        self,
        model_path: Union[str, Path],
        input_size: int = 640,
        confidence_threshold: float = 0.5,
        nms_threshold: float = 0.4,
        layout: str = "yolov5",
        providers: Optional[Sequence[str]] = None,
    ):
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise DetectorError("onnxruntime is required for OnnxYoloDetector") from e

        model_path = Path(model_path)
        if not model_path.exists():
            raise DetectorError(f"Detection model not found: {model_path}")

        self.input_size = input_size
        self.confidence_threshold = confidence_threshold
        self.nms_threshold = nms_threshold
        self.layout = layout
        self._providers = list(providers) if providers else ["CPUExecutionProvider"]

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = (
            ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED
        )
        try:
            self._session = ort.InferenceSession(
                str(model_path), sess_options, providers=self._providers
            )
        except Exception as e:
            raise DetectorError(f"Failed to load detection model {model_path}: {e}") from e
        self._input_name = self._session.get_inputs()[0].name
        logger.info(
            "Detection model loaded: %s (providers: %s)",
            model_path.name,
            self._session.get_providers(),
        )

    def preprocess(self, pixels: np.ndarray) -> np.ndarray:
        """Resize to the model input, convert to RGB CHW float32 in [0, 1]."""
        if pixels.ndim == 2:
            pixels = cv2.cvtColor(pixels, cv2.COLOR_GRAY2BGR)
        resized = cv2.resize(pixels, (self.input_size, self.input_size))
        rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
        tensor = rgb.astype(np.float32) / 255.0
        return np.transpose(tensor, (2, 0, 1))[None, ...]

    def detect(self, frame: Frame) -> List[Detection]:
        h, w = frame.pixels.shape[:2]
        outputs = self._session.run(None, {self._input_name: self.preprocess(frame.pixels)})
        return decode_yolo_output(
            outputs[0],
            frame.index,
            (w, h),
            input_size=self.input_size,
            confidence_threshold=self.confidence_threshold,
            nms_threshold=self.nms_threshold,
            layout=self.layout,
        )


# ---------------------- Tabular I/O ----------------------


def detections_to_dataframe(detections: Sequence[Detection]) -> pd.DataFrame:
    """Flatten detections into a DataFrame (one row per detection)."""
    if not detections:
        return pd.DataFrame(columns=DETECTION_COLUMNS)
    return pd.DataFrame([{c: getattr(d, c) for c in DETECTION_COLUMNS} for d in detections])


def dataframe_to_frame_detections(
    df: pd.DataFrame,
    start_frame: Optional[int] = None,
    end_frame: Optional[int] = None,
) -> List[Tuple[int, List[Detection]]]:
    """
    Group a detection table by frame, one entry per frame index.

    Frames without rows come back with an empty detection list, so an
    occluded object reaches the tracker as a run of misses. The range spans
    ``start_frame`` (default: first frame in the table) to ``end_frame``
    exclusive (default: last frame in the table + 1); rows outside it are
    dropped.

    Only ``frame``, ``x`` and ``y`` are required; missing columns take the
    :class:`Detection` defaults.
    """
    missing = [c for c in ("frame", "x", "y") if c not in df.columns]
    if missing:
        raise ValueError(f"Detection table missing required columns: {missing}")
    if df.empty and (start_frame is None or end_frame is None):
        return []

    first = int(df["frame"].min()) if start_frame is None else start_frame
    stop = int(df["frame"].max()) + 1 if end_frame is None else end_frame
    df = df[(df["frame"] >= first) & (df["frame"] < stop)]

    optional: Dict[str, type] = {
        "width": float,
        "height": float,
        "confidence": float,
        "class_label": int,
        "area": float,
    }
    by_frame: Dict[int, List[Detection]] = {}
    for frame_idx, group in df.sort_values("frame", kind="stable").groupby("frame", sort=True):
        dets = []
        for row in group.itertuples(index=False):
            kwargs = {
                name: cast(getattr(row, name))
                for name, cast in optional.items()
                if name in df.columns and pd.notna(getattr(row, name))
            }
            dets.append(
                Detection(frame=int(frame_idx), x=float(row.x), y=float(row.y), **kwargs)
            )
        by_frame[int(frame_idx)] = dets
    return [(f, by_frame.get(f, [])) for f in range(first, stop)]

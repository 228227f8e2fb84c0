# visualization.py
from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import cv2
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402

from .analysis import TrackKinematics  # noqa: E402
from .common import TrackRecord  # noqa: E402
from .population import MotilityClass  # noqa: E402

Color = Union[str, Tuple[int, int, int]]


class Visualizer:
    """
    Track overview images and velocity histograms for a finished analysis.
    """

    # BGR, as drawn by OpenCV
    COLOR_MAP = {
        "red": (0, 0, 255),
        "blue": (255, 0, 0),
        "green": (0, 255, 0),
        "yellow": (0, 255, 255),
        "white": (255, 255, 255),
        "cyan": (255, 255, 0),
        "magenta": (255, 0, 255),
        "gray": (128, 128, 128),
        "black": (0, 0, 0),
    }

    MOTILITY_COLORS = {
        MotilityClass.PROGRESSIVE: "green",
        MotilityClass.NON_PROGRESSIVE: "yellow",
        MotilityClass.IMMOTILE: "red",
        None: "gray",
    }

    @staticmethod
    def _resolve_color(color: Color) -> Tuple[int, int, int]:
        if isinstance(color, str):
            return Visualizer.COLOR_MAP.get(color.lower(), Visualizer.COLOR_MAP["red"])
        if isinstance(color, tuple) and len(color) == 3:
            return color
        raise ValueError(f"Invalid color: {color}")

    @staticmethod
    def ensure_bgr(frame: np.ndarray) -> np.ndarray:
        if frame.ndim == 2:
            return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
        if frame.ndim == 3 and frame.shape[2] == 1:
            return cv2.cvtColor(frame[..., 0], cv2.COLOR_GRAY2BGR)
        if frame.ndim == 3 and frame.shape[2] >= 3:
            return np.ascontiguousarray(frame[..., :3])
        raise ValueError(f"Unexpected frame shape: {frame.shape}")

    def draw_overview(
        self,
        records: Sequence[TrackRecord],
        output_path: Union[str, Path],
        *,
        background: Optional[np.ndarray] = None,
        image_size: Optional[Tuple[int, int]] = None,
        kinematics: Optional[Sequence[TrackKinematics]] = None,
        track_width: int = 1,
        point_radius: int = 2,
    ) -> Path:
        """
        PNG with every trajectory drawn over ``background`` (or a black canvas
        of ``image_size`` = (width, height)). Tracks are coloured by motility
        class when ``kinematics`` is given.
        """
        if background is not None:
            img = self.ensure_bgr(np.asarray(background).astype(np.uint8))
        else:
            if image_size is None:
                xy = [r.xy() for r in records if r.n_points]
                extent = np.vstack(xy).max(axis=0) if xy else np.array([63.0, 63.0])
                image_size = (int(extent[0]) + 16, int(extent[1]) + 16)
            w, h = image_size
            img = np.zeros((h, w, 3), dtype=np.uint8)

        motility: Dict[int, Optional[str]] = {}
        if kinematics is not None:
            motility = {k.track_id: k.motility for k in kinematics}

        for rec in records:
            if rec.n_points == 0:
                continue
            color = self._resolve_color(
                self.MOTILITY_COLORS.get(motility.get(rec.track_id), "gray")
            )
            pts = np.round(rec.xy()).astype(np.int32).reshape(-1, 1, 2)
            if len(pts) > 1:
                cv2.polylines(img, [pts], False, color, int(track_width), cv2.LINE_AA)
            x0, y0 = pts[0, 0]
            cv2.circle(img, (int(x0), int(y0)), int(point_radius), color, -1)

        out = Path(output_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        if not cv2.imwrite(str(out), img):
            raise RuntimeError(f"Overview image not written to {out}")
        return out

    def draw_velocity_histogram(
        self,
        kinematics: Sequence[TrackKinematics],
        output_path: Union[str, Path],
        dpi: int = 150,
    ) -> Path:
        """Histogram of VCL, VSL and VAP over tracks valid for analysis."""
        valid = [k for k in kinematics if k.is_valid_for_analysis]
        series = {
            "VCL": [k.vcl for k in valid if k.vcl is not None],
            "VSL": [k.vsl for k in valid if k.vsl is not None],
            "VAP": [k.vap for k in valid if k.vap is not None],
        }

        fig, ax = plt.subplots(figsize=(8, 5), dpi=dpi)
        for (name, values), color in zip(series.items(), ("tab:blue", "tab:orange", "tab:green")):
            if values:
                ax.hist(values, bins="auto", alpha=0.5, color=color, edgecolor="black", label=name)
        ax.set_xlabel("Velocity (μm/s)")
        ax.set_ylabel("Tracks")
        ax.set_title(f"Velocity distribution ({len(valid)} tracks)")
        ax.grid(True, alpha=0.3)
        if valid:
            ax.legend()

        out = Path(output_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        fig.tight_layout()
        fig.savefig(out, dpi=dpi)
        plt.close(fig)
        return out

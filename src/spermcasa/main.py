#!/usr/bin/env python3
"""
Sperm Motility Analysis (CASA) - command line entry point.

Runs detection, tracking, kinematics and population analysis on one movie or
a directory of movies and writes per-movie CSV/JSON/text reports.

Usage:
    spermcasa movie.mp4 -o results/
    spermcasa movies/ -o results/ --pixel-size 0.5 --fps 25
    spermcasa movie.tif -o results/ --params-file params.json --overview
    spermcasa movie.tif -o results/ --detections-csv movie_det.csv
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from tqdm import tqdm

from .config import (
    apply_overrides,
    calibration_from_params,
    config_from_params,
    load_configuration,
)
from .core.analysis import kinematics_to_dataframe
from .core.common import InputError, TrackRecord, open_frame_source
from .core.common.io import SUPPORTED_EXTENSIONS
from .core.detect import ContourDetector, Detector, OnnxYoloDetector, dataframe_to_frame_detections
from .core.pipeline import (
    AnalysisCancelled,
    AnalysisConfig,
    AnalysisFailed,
    analyze_detections,
    run_analysis,
)
from .core.report import AnalysisReport, generate_report_text
from .core.tracker import tracks_to_dataframe
from .core.visualization import Visualizer

# ---------------------- Utilities ----------------------


def setup_logging(output_dir: Path, level: int = logging.INFO) -> None:
    """Configure logging to file and stdout."""
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / "pipeline.log"

    # Clear existing handlers
    logger = logging.getLogger()
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)


def validate_input_path(
    input_path: Path, glob_pattern: Optional[str] = None, recursive: bool = False
) -> Tuple[bool, List[Path]]:
    """Return list of files to process (supports single file, directory, or glob pattern)."""
    if glob_pattern:
        if not input_path.is_dir():
            logging.error("--input-glob can only be used with a directory input path")
            return False, []
        files = input_path.rglob(glob_pattern) if recursive else input_path.glob(glob_pattern)
        return True, sorted(f for f in files if f.suffix.lower() in SUPPORTED_EXTENSIONS)

    if not input_path.exists():
        logging.error("Input path does not exist: %s", input_path)
        return False, []

    if input_path.is_file():
        if input_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            logging.error("Unsupported input extension: %s", input_path.suffix)
            return False, []
        return True, [input_path]

    files: List[Path] = []
    for ext in sorted(SUPPORTED_EXTENSIONS):
        files.extend(input_path.rglob(f"*{ext}") if recursive else input_path.glob(f"*{ext}"))
    return True, sorted(files)


# ---------------------- Parameter parsing helpers ----------------------

_CLI_OVERRIDES = {
    "calibration": {
        "pixel_size": "pixel_size",
        "fps": "fps",
        "temperature_c": "temperature",
    },
    "input": {
        "start_frame": "start_frame",
        "end_frame": "end_frame",
        "max_frames": "max_frames",
    },
    "detection": {
        "min_area": "det_min_area",
        "max_area": "det_max_area",
        "min_aspect": "det_min_aspect",
        "max_aspect": "det_max_aspect",
        "min_solidity": "det_min_solidity",
        "threshold": "det_threshold",
        "blur_radius": "det_blur_radius",
    },
    "tracking": {
        "min_hits": "trk_min_hits",
        "max_misses": "trk_max_misses",
        "gating_distance": "trk_gating_distance",
        "min_confidence": "trk_min_confidence",
        "assignment_mode": "trk_assignment_mode",
    },
    "kinematics": {
        "smoothing_window": "vap_window",
    },
    "population": {
        "progressive_speed_threshold": "progressive_speed",
        "min_straightness": "min_straightness",
        "immotile_epsilon_um": "immotile_epsilon",
        "analysis_area_mm2": "area_mm2",
        "chamber_depth_um": "depth_um",
        "sample_volume_ul": "volume_ul",
    },
    "pipeline": {
        "detection_workers": "workers",
        "batch_size": "batch_size",
        "n_jobs": "n_jobs",
    },
}


def cli_overrides(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Collect CLI values into a params-shaped dict (None means not given)."""
    overrides = {
        section: {param: getattr(args, cli, None) for param, cli in mapping.items()}
        for section, mapping in _CLI_OVERRIDES.items()
    }
    if args.trk_no_kalman:
        overrides["tracking"]["use_kalman"] = False
    return overrides


def build_detector(args: argparse.Namespace, config: AnalysisConfig) -> Detector:
    if args.onnx_model:
        return OnnxYoloDetector(
            args.onnx_model,
            input_size=args.onnx_input_size,
            confidence_threshold=args.onnx_confidence,
            nms_threshold=args.onnx_nms,
            layout=args.onnx_layout,
        )
    return ContourDetector(config.detection)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Sperm Motility Analysis (CASA)")
    p.add_argument("input_path", type=Path, help="Input file or directory")
    p.add_argument(
        "-o", "--output-dir", required=True, type=Path, help="Base output directory"
    )
    p.add_argument("--params-file", type=Path, help="Optional JSON params file")
    p.add_argument(
        "--input-glob",
        type=str,
        help="Glob pattern for input files (e.g., '*.tif', '*.mp4')",
    )
    p.add_argument(
        "-r",
        "--recursive",
        action="store_true",
        help="Recursively search input directory for files",
    )
    p.add_argument(
        "--detections-csv",
        type=Path,
        help="Precomputed detections (frame, x, y[, confidence]) for a single input; skips detection",
    )

    # ==================== Calibration ====================
    cal_group = p.add_argument_group("Calibration")
    cal_group.add_argument(
        "--pixel-size", type=float, default=None, help="Pixel size in micrometers (um/pixel)"
    )
    cal_group.add_argument(
        "--fps",
        type=float,
        default=None,
        help="Recording frames per second (default: read from video)",
    )
    cal_group.add_argument(
        "--temperature", type=float, default=None, help="Sample temperature (°C)"
    )

    # ==================== Input ====================
    input_group = p.add_argument_group("Frame Selection")
    input_group.add_argument("--start-frame", type=int, default=None)
    input_group.add_argument("--end-frame", type=int, default=None)
    input_group.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Maximum frames to analyse, sampled evenly (0 = all)",
    )

    # ==================== Detection Parameters ====================
    detection_group = p.add_argument_group("Detection Parameters")
    detection_group.add_argument(
        "--det-min-area", type=int, default=None, help="Minimum detection area (pixels^2)"
    )
    detection_group.add_argument(
        "--det-max-area", type=int, default=None, help="Maximum detection area (pixels^2)"
    )
    detection_group.add_argument(
        "--det-min-aspect", type=float, default=None, help="Minimum aspect ratio"
    )
    detection_group.add_argument(
        "--det-max-aspect", type=float, default=None, help="Maximum aspect ratio"
    )
    detection_group.add_argument(
        "--det-min-solidity",
        type=float,
        default=None,
        help="Minimum solidity threshold (0-1)",
    )
    detection_group.add_argument(
        "--det-threshold",
        type=int,
        default=None,
        help="Threshold for binarization before detection (0-255)",
    )
    detection_group.add_argument(
        "--det-blur-radius",
        type=float,
        default=None,
        help="Blur radius for preprocessing (pixel)",
    )
    detection_group.add_argument(
        "--onnx-model", type=Path, default=None, help="YOLO ONNX model (replaces contour detection)"
    )
    detection_group.add_argument("--onnx-input-size", type=int, default=640)
    detection_group.add_argument("--onnx-confidence", type=float, default=0.5)
    detection_group.add_argument("--onnx-nms", type=float, default=0.4)
    detection_group.add_argument(
        "--onnx-layout", choices=["yolov5", "yolov8"], default="yolov5"
    )

    # ==================== Tracking Parameters ====================
    tracking_group = p.add_argument_group("Tracking Parameters")
    tracking_group.add_argument(
        "--trk-min-hits",
        type=int,
        default=None,
        help="Consecutive matches needed to confirm a track",
    )
    tracking_group.add_argument(
        "--trk-max-misses",
        type=int,
        default=None,
        help="Consecutive missed frames before a track is terminated",
    )
    tracking_group.add_argument(
        "--trk-gating-distance",
        type=float,
        default=None,
        help="Maximum prediction-to-detection distance (pixels)",
    )
    tracking_group.add_argument(
        "--trk-min-confidence",
        type=float,
        default=None,
        help="Detections below this confidence are ignored",
    )
    tracking_group.add_argument(
        "--trk-assignment-mode", choices=["hungarian", "greedy"], default=None
    )
    tracking_group.add_argument(
        "--trk-no-kalman",
        action="store_true",
        help="Predict by linear extrapolation instead of a Kalman filter",
    )

    # ==================== Analysis Parameters ====================
    analysis_group = p.add_argument_group("Analysis Parameters")
    analysis_group.add_argument(
        "--vap-window", type=int, default=None, help="VAP smoothing window (frames)"
    )
    analysis_group.add_argument(
        "--progressive-speed",
        type=float,
        default=None,
        help="Minimum VSL for progressive motility (um/s)",
    )
    analysis_group.add_argument(
        "--min-straightness", type=float, default=None, help="Minimum STR for progressive motility"
    )
    analysis_group.add_argument(
        "--immotile-epsilon",
        type=float,
        default=None,
        help="Curvilinear distance below which a cell is immotile (um)",
    )
    analysis_group.add_argument(
        "--area-mm2", type=float, default=None, help="Analysed field area (mm^2)"
    )
    analysis_group.add_argument(
        "--depth-um", type=float, default=None, help="Counting chamber depth (um)"
    )
    analysis_group.add_argument(
        "--volume-ul", type=float, default=None, help="Sample volume (uL), overrides area x depth"
    )

    # ==================== Control Flags ====================
    control_group = p.add_argument_group("Control Flags")
    control_group.add_argument("--workers", type=int, default=None, help="Detection threads")
    control_group.add_argument("--batch-size", type=int, default=None, help="Frames per detection batch")
    control_group.add_argument(
        "--n-jobs", type=int, default=None, help="Parallel jobs for kinematics (-1 = all cores)"
    )
    control_group.add_argument(
        "--overview", action="store_true", help="Write track overview and velocity histogram PNGs"
    )
    control_group.add_argument(
        "--verbose", action="store_true", help="Enable verbose logging"
    )

    return p


# ---------------------- Main pipeline ----------------------


class _ProgressBar:
    def __init__(self, desc: str):
        self._bar = tqdm(total=100, desc=desc, unit="%", leave=False)

    def __call__(self, value: float) -> None:
        self._bar.update(max(0.0, value - self._bar.n))

    def close(self) -> None:
        self._bar.close()


def save_outputs(
    report: AnalysisReport,
    tracks: List[TrackRecord],
    out_dir: Path,
    movie_name: str,
    overview: bool = False,
    background=None,
) -> None:
    """Write CSV, text and JSON outputs for one analysed movie."""
    kinematics_to_dataframe(report.kinematics).to_csv(
        out_dir / f"{movie_name}_ana_motility.csv", index=False
    )
    tracks_to_dataframe(tracks).to_csv(
        out_dir / f"{movie_name}_trk_tracks.csv", index=False
    )
    with open(out_dir / f"{movie_name}_ana_report.txt", "w", encoding="utf-8") as fh:
        fh.write(generate_report_text(report))
    with open(out_dir / f"{movie_name}_report.json", "w") as fh:
        fh.write(report.to_json())

    if overview:
        viz = Visualizer()
        try:
            viz.draw_overview(
                tracks,
                out_dir / f"{movie_name}_trk_overview.png",
                background=background,
                kinematics=report.kinematics,
            )
            viz.draw_velocity_histogram(
                report.kinematics, out_dir / f"{movie_name}_ana_velocity_hist.png"
            )
        except Exception as e:
            logging.warning("Overview image failed: %s", e)
            logging.error("Overview image error details:", exc_info=True)


def write_pipeline_summary(
    out_dir: Path,
    movie_name: str,
    start_time: float,
    params: Dict[str, Dict[str, Any]],
    status: str,
) -> None:
    """Write pipeline summary JSON file."""
    summary = {
        "movie": movie_name,
        "timestamp": datetime.now().isoformat(),
        "duration_seconds": time.time() - start_time,
        "status": status,
        "params": params,
    }
    with open(out_dir / f"{movie_name}_pipeline_summary.json", "w") as fh:
        json.dump(summary, fh, indent=2, default=str)


def _first_frame(in_file: Path):
    try:
        with open_frame_source(in_file, max_frames=1) as source:
            return next(iter(source)).pixels
    except (InputError, StopIteration):
        return None


def process_single_movie(
    in_file: Path,
    args: argparse.Namespace,
    params: Dict[str, Dict[str, Any]],
    log_level: int,
    relative_path: Optional[Path] = None,
) -> bool:
    """Process a single movie file through the complete pipeline."""
    t0 = time.time()
    movie_name = in_file.stem
    if relative_path:
        out_dir = args.output_dir / relative_path.parent / movie_name
    else:
        out_dir = args.output_dir / movie_name

    setup_logging(out_dir, level=log_level)
    logging.info("Processing %s", in_file)

    try:
        config = config_from_params(params)
        io_params = params["input"]
        source = open_frame_source(
            in_file,
            fps=params["calibration"].get("fps"),
            start_frame=io_params.get("start_frame") or 0,
            end_frame=io_params.get("end_frame"),
            max_frames=io_params.get("max_frames") or None,
        )
    except (InputError, ValueError) as e:
        logging.error("Processing failed for %s: %s", movie_name, e)
        write_pipeline_summary(out_dir, movie_name, t0, params, "failed")
        return False

    progress = _ProgressBar(movie_name)
    tracks: List[TrackRecord] = []
    try:
        calibration = calibration_from_params(params, source_fps=source.fps)
        if args.detections_csv:
            frame_detections = dataframe_to_frame_detections(
                pd.read_csv(args.detections_csv),
                start_frame=io_params.get("start_frame") or 0,
                end_frame=io_params.get("end_frame"),
            )
            result = analyze_detections(
                frame_detections,
                calibration,
                config,
                progress_callback=progress,
                source_name=movie_name,
                track_sink=tracks.extend,
            )
        else:
            result = run_analysis(
                source,
                calibration,
                config,
                build_detector(args, config),
                progress_callback=progress,
                track_sink=tracks.extend,
            )
    except Exception as e:
        logging.error("Processing failed for %s: %s", movie_name, e)
        logging.error("Detailed error information:", exc_info=True)
        write_pipeline_summary(out_dir, movie_name, t0, params, "failed")
        return False
    finally:
        progress.close()
        source.close()

    if isinstance(result, AnalysisFailed):
        logging.error("Analysis failed (%s): %s", result.kind, result.reason)
        write_pipeline_summary(out_dir, movie_name, t0, params, f"failed:{result.kind}")
        return False
    if isinstance(result, AnalysisCancelled):
        logging.warning("Analysis cancelled after %d frames", result.frames_processed)
        write_pipeline_summary(out_dir, movie_name, t0, params, "cancelled")
        return False

    background = _first_frame(in_file) if args.overview else None
    save_outputs(
        result, tracks, out_dir, movie_name, overview=args.overview, background=background
    )
    print(generate_report_text(result))

    write_pipeline_summary(out_dir, movie_name, t0, params, "completed")
    logging.info("Processing complete: %s (%.2fs)", movie_name, time.time() - t0)
    return True


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the sperm motility analysis pipeline."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    params = load_configuration(args.params_file)
    params = apply_overrides(params, cli_overrides(args))
    log_level = logging.DEBUG if args.verbose else logging.INFO

    is_valid, input_files = validate_input_path(
        args.input_path, args.input_glob, args.recursive
    )
    if not is_valid or not input_files:
        print("No input files found or invalid path.")
        return 1
    if args.detections_csv and len(input_files) > 1:
        print("--detections-csv can only be used with a single input file.")
        return 1

    success_count = 0
    for in_file in tqdm(input_files, desc="Movies", unit="file", disable=len(input_files) < 2):
        relative_path = None
        if args.input_path.is_dir():
            try:
                relative_path = in_file.relative_to(args.input_path)
            except ValueError:
                relative_path = Path(in_file.name)

        if process_single_movie(in_file, args, params, log_level, relative_path):
            success_count += 1

    logging.info(
        "Pipeline completed: %d/%d files processed successfully",
        success_count,
        len(input_files),
    )
    return 0 if success_count == len(input_files) else 1


if __name__ == "__main__":
    sys.exit(main())

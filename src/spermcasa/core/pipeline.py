#!/usr/bin/env python3
"""
End-to-end CASA analysis: frames -> detections -> tracks -> kinematics ->
population metrics -> interpretation -> report.

A single pipeline thread consumes frames in order. Detection may run on a
thread pool, one order-preserving batch at a time; the tracker is only ever
touched from the pipeline thread.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .analysis import KinematicsConfig, compute_kinematics_batch
from .common import (
    CalibrationSettings,
    Detection,
    DetectorError,
    Frame,
    FrameOrderError,
    FrameSource,
    InputError,
    TrackRecord,
    open_frame_source,
)
from .detect import ContourDetector, DetectionConfig, Detector
from .interpretation import (
    Interpretation,
    InterpretationConfig,
    classify_population,
    generate_interpretation_notes,
)
from .population import PopulationConfig, PopulationMetrics, aggregate_population, annotate_motility
from .report import (
    AnalysisReport,
    DetectionSummary,
    SummaryConfig,
    average_confidence,
    summarize_tracks,
)
from .tracker import SpermTracker, TrackerConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
Interpreter = Callable[[PopulationMetrics, InterpretationConfig], Interpretation]
TrackSink = Callable[[List[TrackRecord]], None]


@dataclass
class PipelineConfig:
    detection_workers: int = 1
    batch_size: int = 8
    n_jobs: int = 1  # kinematics workers

    def validate(self) -> None:
        if self.detection_workers < 1:
            raise ValueError("detection_workers must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


@dataclass
class AnalysisConfig:
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    kinematics: KinematicsConfig = field(default_factory=KinematicsConfig)
    population: PopulationConfig = field(default_factory=PopulationConfig)
    interpretation: InterpretationConfig = field(default_factory=InterpretationConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class AnalysisCancelled:
    frames_processed: int


@dataclass(frozen=True)
class AnalysisFailed:
    reason: str
    kind: str  # "input" or "inference"


AnalysisResult = Union[AnalysisReport, AnalysisCancelled, AnalysisFailed]


class _Cancelled(Exception):
    pass


def _notify(callback: Optional[ProgressCallback], value: float) -> None:
    if callback is None:
        return
    try:
        callback(value)
    except Exception:
        logger.warning("Progress callback raised; ignoring", exc_info=True)


class _AnalysisRun:
    """State of one run: owns the tracker and the detection summary."""

    def __init__(
        self,
        calibration: CalibrationSettings,
        config: AnalysisConfig,
        progress_callback: Optional[ProgressCallback],
        cancellation_token: Optional[CancellationToken],
        interpreter: Interpreter,
        track_sink: Optional[TrackSink] = None,
    ):
        self.calibration = calibration
        self.config = config
        self.progress_callback = progress_callback
        self.token = cancellation_token
        self.interpreter = interpreter
        self.track_sink = track_sink
        self.tracker = SpermTracker(config.tracker)
        self.detection_summary = DetectionSummary(config.summary)
        self.frames_processed = 0
        self._started = time.perf_counter()

    def check_cancelled(self) -> None:
        if self.token is not None and self.token.cancelled:
            raise _Cancelled()

    def consume(self, frame_index: int, detections: Sequence[Detection]) -> None:
        self.check_cancelled()
        self.tracker.update(frame_index, detections)
        self.detection_summary.add(frame_index, detections)
        self.frames_processed += 1

    def report_progress(self, expected: Optional[int]) -> None:
        if expected:
            _notify(self.progress_callback, min(99.0, 100.0 * self.frames_processed / expected))

    def finish(self, source_name: Optional[str] = None) -> AnalysisReport:
        self.tracker.finalize()
        records = self.tracker.confirmed_records()
        if self.track_sink is not None:
            self.track_sink(records)

        kinematics = compute_kinematics_batch(
            records, self.calibration, self.config.kinematics, self.config.pipeline.n_jobs
        )
        kinematics = annotate_motility(kinematics, self.config.population)
        metrics = aggregate_population(records, kinematics, self.config.population)
        interpretation = self.interpreter(metrics, self.config.interpretation)
        notes = generate_interpretation_notes(metrics, self.config.interpretation)

        report = AnalysisReport(
            metrics=metrics,
            interpretation=interpretation,
            interpretation_notes=notes,
            calibration=self.calibration,
            frames_analyzed=self.frames_processed,
            frame_rate=self.calibration.frame_rate,
            kinematics=kinematics,
            tracks=records[: self.config.summary.max_tracks],
            detection_summary=self.detection_summary.to_dict(),
            tracking_summary=summarize_tracks(
                records, kinematics, self.calibration, self.config.summary
            ),
            ai_confidence_average=average_confidence(records),
            analysis_duration_s=time.perf_counter() - self._started,
            source_name=source_name,
            max_tracks=self.config.summary.max_tracks,
        )
        _notify(self.progress_callback, 100.0)
        logger.info(
            "Analysis finished: %d frames, %d confirmed tracks, interpretation=%s",
            self.frames_processed,
            metrics.total_count,
            interpretation.label,
        )
        return report


def _detect_one(detector: Detector, frame: Frame) -> List[Detection]:
    try:
        return list(detector.detect(frame))
    except DetectorError:
        raise
    except Exception as e:
        raise DetectorError(f"Detector failed on frame {frame.index}: {e}") from e


def _batches(frames: Iterator[Frame], size: int) -> Iterator[List[Frame]]:
    while True:
        batch = list(islice(frames, size))
        if not batch:
            return
        yield batch


def _detect_stream(
    frames: Iterable[Frame],
    detector: Detector,
    run: _AnalysisRun,
    executor: Optional[ThreadPoolExecutor],
    expected: Optional[int],
) -> Iterator[Tuple[int, List[Detection]]]:
    batch_size = run.config.pipeline.batch_size
    for batch in _batches(iter(frames), batch_size):
        run.check_cancelled()
        if executor is None:
            results = [_detect_one(detector, f) for f in batch]
        else:
            results = list(executor.map(lambda f: _detect_one(detector, f), batch))
        for frame, dets in zip(batch, results):
            yield frame.index, dets
        run.report_progress(expected)


def _open_source(
    source: Union[FrameSource, str, Path], calibration: CalibrationSettings
) -> Tuple[FrameSource, bool]:
    if isinstance(source, FrameSource):
        return source, False
    return open_frame_source(source, fps=calibration.frame_rate), True


def run_analysis(
    source: Union[FrameSource, str, Path],
    calibration: CalibrationSettings,
    config: Optional[AnalysisConfig] = None,
    detector: Optional[Detector] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancellation_token: Optional[CancellationToken] = None,
    interpreter: Interpreter = classify_population,
    track_sink: Optional[TrackSink] = None,
) -> AnalysisResult:
    """
    Analyse one recording.

    Args:
        source: a FrameSource or a path to a video/TIFF file
        calibration: spatial and temporal calibration
        config: analysis configuration (defaults when omitted)
        detector: per-frame detector; a ContourDetector when omitted
        progress_callback: called with 0-100 after each frame batch
        cancellation_token: checked at every frame boundary
        interpreter: maps population metrics to an Interpretation
        track_sink: receives every confirmed track once tracking ends; the
            report itself keeps only the first ``summary.max_tracks``

    Returns:
        AnalysisReport, AnalysisCancelled or AnalysisFailed
    """
    config = config or AnalysisConfig()
    config.pipeline.validate()
    detector = detector or ContourDetector(config.detection)

    try:
        frame_source, owned = _open_source(source, calibration)
    except InputError as e:
        logger.error("Input error: %s", e)
        return AnalysisFailed(str(e), "input")

    run = _AnalysisRun(
        calibration, config, progress_callback, cancellation_token, interpreter, track_sink
    )
    workers = config.pipeline.detection_workers
    executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
    _notify(progress_callback, 0.0)

    try:
        stream = _detect_stream(
            frame_source, detector, run, executor, frame_source.expected_frames
        )
        for frame_index, dets in stream:
            run.consume(frame_index, dets)
        if run.frames_processed == 0:
            raise InputError(f"No frames decoded from {frame_source.name}")
        return run.finish(frame_source.name)
    except _Cancelled:
        logger.info("Analysis cancelled after %d frames", run.frames_processed)
        return AnalysisCancelled(run.frames_processed)
    except (InputError, FrameOrderError) as e:
        logger.error("Input error: %s", e)
        return AnalysisFailed(str(e), "input")
    except DetectorError as e:
        logger.error("Inference error: %s", e)
        return AnalysisFailed(str(e), "inference")
    finally:
        if executor is not None:
            executor.shutdown(wait=True)
        if owned:
            frame_source.close()


def analyze_detections(
    frame_detections: Iterable[Tuple[int, Sequence[Detection]]],
    calibration: CalibrationSettings,
    config: Optional[AnalysisConfig] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancellation_token: Optional[CancellationToken] = None,
    interpreter: Interpreter = classify_population,
    source_name: Optional[str] = None,
    track_sink: Optional[TrackSink] = None,
) -> Union[AnalysisReport, AnalysisCancelled]:
    """
    Track -> report stages on precomputed (frame_index, detections) pairs.

    Raises:
        FrameOrderError: if frame indices are not strictly increasing
    """
    config = config or AnalysisConfig()
    run = _AnalysisRun(
        calibration, config, progress_callback, cancellation_token, interpreter, track_sink
    )
    try:
        for frame_index, dets in frame_detections:
            run.consume(frame_index, dets)
    except _Cancelled:
        logger.info("Analysis cancelled after %d frames", run.frames_processed)
        return AnalysisCancelled(run.frames_processed)
    return run.finish(source_name)


class AnalysisJob:
    """
    One analysis run with pull-based progress.

    ``run()`` executes on the calling thread; ``start()`` runs it on a
    background thread and ``wait()`` returns its result.
    """

    def __init__(
        self,
        source: Union[FrameSource, str, Path],
        calibration: CalibrationSettings,
        config: Optional[AnalysisConfig] = None,
        detector: Optional[Detector] = None,
        interpreter: Interpreter = classify_population,
        track_sink: Optional[TrackSink] = None,
    ):
        self.source = source
        self.calibration = calibration
        self.config = config
        self.detector = detector
        self.interpreter = interpreter
        self.track_sink = track_sink
        self.token = CancellationToken()
        self.result: Optional[AnalysisResult] = None
        self._progress = 0.0
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    def _set_progress(self, value: float) -> None:
        with self._lock:
            self._progress = value

    def cancel(self) -> None:
        self.token.cancel()

    def run(self) -> AnalysisResult:
        self.result = run_analysis(
            self.source,
            self.calibration,
            self.config,
            self.detector,
            progress_callback=self._set_progress,
            cancellation_token=self.token,
            interpreter=self.interpreter,
            track_sink=self.track_sink,
        )
        return self.result

    def start(self) -> "AnalysisJob":
        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()
        return self

    def wait(self, timeout: Optional[float] = None) -> Optional[AnalysisResult]:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result

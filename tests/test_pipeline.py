from __future__ import annotations

import threading

import numpy as np
import pytest

from helpers.synthetic import ScriptedDetector, blank_stack, merge_streams, moving_point
from spermcasa.core.common import ArrayFrameSource, CalibrationSettings, Detection, FrameOrderError
from spermcasa.core.interpretation import Interpretation
from spermcasa.core.pipeline import (
    AnalysisCancelled,
    AnalysisConfig,
    AnalysisFailed,
    AnalysisJob,
    CancellationToken,
    PipelineConfig,
    analyze_detections,
    run_analysis,
)
from spermcasa.core.detect import dataframe_to_frame_detections, detections_to_dataframe
from spermcasa.core.report import AnalysisReport, SummaryConfig

CAL = CalibrationSettings(microns_per_pixel=0.5, frame_rate=25.0)


def _straight_line_detector(n_frames=100):
    stream = moving_point(range(n_frames))
    return ScriptedDetector({f: [d] for f, d in stream.items()})


def _source(n_frames=100):
    return ArrayFrameSource(blank_stack(n_frames), fps=25.0)


def test_straight_line_end_to_end():
    result = run_analysis(_source(), CAL, detector=_straight_line_detector())

    assert isinstance(result, AnalysisReport)
    assert result.frames_analyzed == 100
    assert result.metrics.total_count == 1
    assert result.metrics.tracked_count == 1
    k = result.kinematics[0]
    assert k.elapsed_s == pytest.approx(4.0)
    assert k.vcl == pytest.approx(24.75)
    assert k.vsl == pytest.approx(24.75)
    assert k.vap == pytest.approx(24.75)
    assert k.lin == pytest.approx(1.0)
    assert k.motility == "progressive"
    assert result.metrics.progressive_motility == pytest.approx(100.0)
    # one cell in 0.02 uL is far below the concentration cutoff
    assert result.interpretation == Interpretation.OLIGOSPERMIA
    assert result.ai_confidence_average == pytest.approx(0.9)


def test_no_detections_gives_azoospermia_report():
    result = run_analysis(_source(20), CAL, detector=ScriptedDetector({}))

    assert isinstance(result, AnalysisReport)
    assert result.interpretation == Interpretation.AZOOSPERMIA
    assert result.metrics.total_count == 0
    assert result.metrics.progressive_motility == 0.0
    assert result.metrics.total_motility == 0.0
    assert result.kinematics == []


def test_cancel_at_frame_ten():
    token = CancellationToken()

    def on_frame(index):
        if index == 10:
            token.cancel()

    detector = ScriptedDetector({}, on_frame=on_frame)
    config = AnalysisConfig(pipeline=PipelineConfig(batch_size=1))
    result = run_analysis(_source(), CAL, config, detector, cancellation_token=token)

    assert isinstance(result, AnalysisCancelled)
    assert result.frames_processed == 10


def test_cancel_before_start():
    token = CancellationToken()
    token.cancel()
    result = run_analysis(_source(), CAL, detector=_straight_line_detector(), cancellation_token=token)
    assert isinstance(result, AnalysisCancelled)
    assert result.frames_processed == 0


def test_detector_failure_is_inference_error():
    def boom(index):
        if index == 3:
            raise RuntimeError("model crashed")

    result = run_analysis(_source(10), CAL, detector=ScriptedDetector({}, on_frame=boom))

    assert isinstance(result, AnalysisFailed)
    assert result.kind == "inference"
    assert "model crashed" in result.reason


def test_missing_file_is_input_error(tmp_path):
    result = run_analysis(tmp_path / "missing.mp4", CAL, detector=ScriptedDetector({}))
    assert isinstance(result, AnalysisFailed)
    assert result.kind == "input"


def test_unsupported_extension_is_input_error(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("not a video")
    result = run_analysis(path, CAL, detector=ScriptedDetector({}))
    assert isinstance(result, AnalysisFailed)
    assert result.kind == "input"


def test_zero_frames_is_input_error():
    source = ArrayFrameSource(blank_stack(5), start_frame=10)
    result = run_analysis(source, CAL, detector=ScriptedDetector({}))
    assert isinstance(result, AnalysisFailed)
    assert result.kind == "input"


def test_progress_is_reported_and_ends_at_100():
    seen = []
    config = AnalysisConfig(pipeline=PipelineConfig(batch_size=10))
    run_analysis(_source(), CAL, config, _straight_line_detector(), progress_callback=seen.append)

    assert seen[0] == 0.0
    assert seen[-1] == 100.0
    assert seen == sorted(seen)
    assert len(seen) >= 10


def test_failing_progress_callback_is_ignored():
    def bad_callback(value):
        raise ValueError("ui went away")

    result = run_analysis(
        _source(), CAL, detector=_straight_line_detector(), progress_callback=bad_callback
    )
    assert isinstance(result, AnalysisReport)


def test_runs_are_deterministic():
    streams = [moving_point(range(60), x0=5.0, y0=20.0 + 25.0 * i, vx=1.0 + i) for i in range(4)]
    by_frame = dict(merge_streams(60, *streams))

    first = run_analysis(_source(60), CAL, detector=ScriptedDetector(by_frame))
    second = run_analysis(_source(60), CAL, detector=ScriptedDetector(by_frame))

    assert first.metrics == second.metrics
    assert first.kinematics == second.kinematics
    assert first.interpretation == second.interpretation


def test_threaded_detection_matches_sequential():
    streams = [moving_point(range(50), x0=5.0, y0=20.0 + 30.0 * i) for i in range(3)]
    by_frame = dict(merge_streams(50, *streams))

    sequential = run_analysis(_source(50), CAL, detector=ScriptedDetector(by_frame))
    threaded = run_analysis(
        _source(50),
        CAL,
        AnalysisConfig(pipeline=PipelineConfig(detection_workers=4, batch_size=7)),
        ScriptedDetector(by_frame),
    )
    assert sequential.kinematics == threaded.kinematics


def test_custom_interpreter_is_used():
    result = run_analysis(
        _source(),
        CAL,
        detector=_straight_line_detector(),
        interpreter=lambda metrics, config: Interpretation.NORMAL,
    )
    assert result.interpretation == Interpretation.NORMAL


def test_analyze_detections_matches_run_analysis():
    pairs = merge_streams(100, moving_point(range(100)))
    report = analyze_detections(pairs, CAL, source_name="synthetic")

    assert isinstance(report, AnalysisReport)
    assert report.source_name == "synthetic"
    assert report.kinematics[0].vcl == pytest.approx(24.75)


def test_analyze_detections_rejects_out_of_order_frames():
    pairs = [(1, []), (0, [])]
    with pytest.raises(FrameOrderError):
        analyze_detections(pairs, CAL)


def test_short_noise_tracks_do_not_count():
    by_frame = {f: [Detection(frame=f, x=5.0 + 40 * (f % 3), y=5.0 + 40 * (f % 2))] for f in range(0, 30, 2)}
    result = run_analysis(_source(30), CAL, detector=ScriptedDetector(by_frame))
    assert result.metrics.total_count == 0


def test_analysis_job_pull_progress():
    job = AnalysisJob(_source(), CAL, detector=_straight_line_detector())
    assert job.progress == 0.0
    result = job.run()

    assert isinstance(result, AnalysisReport)
    assert job.progress == 100.0
    assert job.result is result


def test_analysis_job_background_cancel():
    gate = threading.Event()

    def block(index):
        if index == 5:
            gate.wait(timeout=5)

    job = AnalysisJob(
        _source(),
        CAL,
        config=AnalysisConfig(pipeline=PipelineConfig(batch_size=1)),
        detector=ScriptedDetector({}, on_frame=block),
    )
    job.start()
    job.cancel()
    gate.set()
    result = job.wait(timeout=10)
    assert isinstance(result, AnalysisCancelled)


def test_report_summaries_are_capped():
    streams = [moving_point(range(30), x0=5.0, y0=10.0 + 12.0 * i, vx=0.5) for i in range(25)]
    by_frame = dict(merge_streams(30, *streams))
    result = run_analysis(_source(30), CAL, detector=ScriptedDetector(by_frame))

    summary = result.detection_summary
    assert summary["total_frames"] == 30
    assert summary["total_detections"] == 750
    assert len(summary["detections_by_frame"]) == 10
    assert all(len(f["detections"]) == 5 for f in summary["detections_by_frame"])

    tracking = result.tracking_summary
    assert tracking["total_tracks"] == 25
    assert len(tracking["track_summary"]) == 20
    assert np.isclose(tracking["average_track_length"], 30.0)

    assert len(result.tracks) == 20
    data = result.to_dict()
    assert data["kinematics_total"] == 25
    assert len(data["kinematics"]) == 20


def test_occlusion_in_detection_table_starts_new_track():
    stream = moving_point(list(range(20)) + list(range(60, 100)))
    table = detections_to_dataframe(list(stream.values()))

    report = analyze_detections(dataframe_to_frame_detections(table), CAL)

    assert report.frames_analyzed == 100
    assert [t.track_id for t in report.tracks] == [0, 1]


def test_short_occlusion_in_detection_table_keeps_track():
    stream = moving_point(list(range(20)) + list(range(24, 60)))
    table = detections_to_dataframe(list(stream.values()))

    report = analyze_detections(dataframe_to_frame_detections(table), CAL)

    assert [t.track_id for t in report.tracks] == [0]
    assert report.tracks[0].n_points == 56


def test_report_caps_retained_tracks_and_hands_all_to_sink():
    streams = [moving_point(range(40), x0=5.0, y0=10.0 + 12.0 * i, vx=0.5) for i in range(30)]
    collected = []
    config = AnalysisConfig(summary=SummaryConfig(max_tracks=8))

    report = analyze_detections(
        merge_streams(40, *streams), CAL, config, track_sink=collected.extend
    )

    assert len(collected) == 30
    assert len(report.tracks) == 8
    assert len(report.kinematics) == 30
    data = report.to_dict()
    assert data["kinematics_total"] == 30
    assert len(data["kinematics"]) == 8
    assert len(data["tracking_summary"]["track_summary"]) == 8

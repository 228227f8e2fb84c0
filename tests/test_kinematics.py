from __future__ import annotations

import numpy as np
import pytest

from helpers.synthetic import make_record
from spermcasa.core.analysis import (
    KINEMATICS_COLUMNS,
    KinematicsConfig,
    calculate_mad,
    compute_kinematics_batch,
    compute_track_kinematics,
    kinematics_to_dataframe,
)
from spermcasa.core.common import CalibrationSettings, TrackRecord

CAL = CalibrationSettings(microns_per_pixel=0.5, frame_rate=25.0)


def _straight(n=100, step=2.0):
    return make_record([(10.0 + step * i, 50.0) for i in range(n)])


def test_reference_straight_line_scenario():
    k = compute_track_kinematics(_straight(), CAL)

    assert k.is_valid_for_analysis
    assert k.elapsed_s == pytest.approx(4.0)
    assert k.vcl == pytest.approx(24.75)
    assert k.vsl == pytest.approx(24.75)
    assert k.vap == pytest.approx(24.75)
    assert k.lin == pytest.approx(1.0)
    assert k.str == pytest.approx(1.0)
    assert k.wob == pytest.approx(1.0)
    assert k.alh == pytest.approx(0.0, abs=1e-9)
    assert k.bcf == 0.0
    assert k.mad_deg == pytest.approx(0.0, abs=1e-6)
    assert k.curvilinear_distance_um == pytest.approx(99.0)


def test_single_position_is_invalid_with_no_metrics():
    k = compute_track_kinematics(make_record([(5.0, 5.0)]), CAL)

    assert not k.is_valid_for_analysis
    assert k.n_points == 1
    for name in ("vcl", "vsl", "vap", "lin", "str", "wob", "alh", "bcf"):
        assert getattr(k, name) is None


def test_zero_elapsed_time_is_invalid():
    rec = make_record([(0.0, 0.0), (1.0, 0.0)])
    rec = TrackRecord(
        track_id=rec.track_id,
        positions=rec.positions,
        start_frame=3,
        end_frame=3,
        state=rec.state,
        confirmed=True,
    )
    k = compute_track_kinematics(rec, CAL)
    assert not k.is_valid_for_analysis
    assert k.vcl is None


def test_empty_track_is_invalid():
    rec = TrackRecord(
        track_id=7, positions=(), start_frame=0, end_frame=0, state="terminated", confirmed=False
    )
    k = compute_track_kinematics(rec, CAL)
    assert not k.is_valid_for_analysis
    assert k.elapsed_s is None


def test_stationary_track_has_undefined_ratios():
    k = compute_track_kinematics(make_record([(20.0, 20.0)] * 10), CAL)

    assert k.is_valid_for_analysis
    assert k.vcl == 0.0
    assert k.vsl == 0.0
    assert k.lin is None
    assert k.str is None
    assert k.wob is None


def test_zigzag_path_has_lateral_motion():
    xy = [(2.0 * i, 50.0 + (1.5 if i % 2 else -1.5)) for i in range(50)]
    k = compute_track_kinematics(make_record(xy), CAL)

    assert k.vcl > k.vsl
    assert 0.0 < k.lin < 1.0
    assert 0.0 <= k.str <= 1.0
    assert 0.0 <= k.wob <= 1.0
    assert k.alh > 0.0
    assert k.bcf > 0.0
    assert k.mad_deg > 0.0


def test_ratios_are_clamped_to_unit_interval():
    rng = np.random.default_rng(0)
    xy = np.cumsum(rng.normal(size=(60, 2)), axis=0)
    k = compute_track_kinematics(make_record([tuple(p) for p in xy]), CAL)
    for name in ("lin", "str", "wob"):
        value = getattr(k, name)
        assert value is None or 0.0 <= value <= 1.0


def test_velocities_scale_with_calibration():
    rec = _straight(n=20)
    slow = compute_track_kinematics(rec, CalibrationSettings(0.5, 25.0))
    fast = compute_track_kinematics(rec, CalibrationSettings(1.0, 50.0))
    assert fast.vcl == pytest.approx(4 * slow.vcl)


def test_min_positions_config():
    rec = _straight(n=3)
    assert compute_track_kinematics(rec, CAL, KinematicsConfig(min_positions=2)).is_valid_for_analysis
    assert not compute_track_kinematics(rec, CAL, KinematicsConfig(min_positions=5)).is_valid_for_analysis


def test_mad_right_angle():
    pts = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0]])
    assert calculate_mad(pts) == pytest.approx(90.0)
    assert calculate_mad(pts[:2]) is None


def test_batch_preserves_order_and_matches_sequential():
    records = [
        make_record([(i + 3.0 * j, 2.0 * i) for j in range(15)], track_id=i) for i in range(6)
    ]
    seq = compute_kinematics_batch(records, CAL, n_jobs=1)
    par = compute_kinematics_batch(records, CAL, n_jobs=2)

    assert [k.track_id for k in par] == list(range(6))
    assert seq == par


def test_kinematics_dataframe_columns():
    ks = [compute_track_kinematics(_straight(n=10), CAL)]
    df = kinematics_to_dataframe(ks)
    assert list(df.columns) == KINEMATICS_COLUMNS
    assert df["VCL_um_s"].iloc[0] == pytest.approx(ks[0].vcl)


def test_calibration_rejects_non_positive_values():
    with pytest.raises(ValueError):
        CalibrationSettings(microns_per_pixel=0.0, frame_rate=25.0)
    with pytest.raises(ValueError):
        CalibrationSettings(microns_per_pixel=0.5, frame_rate=-1.0)

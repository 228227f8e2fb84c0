from __future__ import annotations

import pytest

from spermcasa.core.interpretation import (
    Interpretation,
    InterpretationConfig,
    classify_population,
    generate_interpretation_notes,
)
from spermcasa.core.population import PopulationMetrics


def _metrics(total=100, tracked=50, conc=40.0, pr=50.0, total_motility=60.0, vcl=35.0):
    return PopulationMetrics(
        total_count=total,
        tracked_count=tracked,
        concentration=conc,
        progressive_motility=pr,
        non_progressive_motility=total_motility - pr if total_motility >= pr else 0.0,
        immotile_percent=100.0 - total_motility,
        total_motility=total_motility,
        vcl=vcl,
    )


@pytest.mark.parametrize(
    "conc, pr, expected",
    [
        (10.0, 20.0, Interpretation.OLIGO_ASTHENOSPERMIA),
        (10.0, 50.0, Interpretation.OLIGOSPERMIA),
        (20.0, 20.0, Interpretation.ASTHENOSPERMIA),
        (20.0, 50.0, Interpretation.NORMAL),
        (15.0, 32.0, Interpretation.NORMAL),
    ],
)
def test_classification_rules(conc, pr, expected):
    assert classify_population(_metrics(conc=conc, pr=pr)) == expected


def test_zero_count_is_azoospermia_regardless_of_other_values():
    m = _metrics(total=0, tracked=0, conc=0.0, pr=0.0, total_motility=0.0, vcl=None)
    assert classify_population(m) == Interpretation.AZOOSPERMIA


def test_thresholds_are_configurable():
    cfg = InterpretationConfig(low_concentration_threshold=50.0)
    assert classify_population(_metrics(conc=40.0), cfg) == Interpretation.OLIGOSPERMIA


def test_enum_values_are_stable():
    assert [i.value for i in Interpretation] == list(range(1, 10))
    assert Interpretation.AZOOSPERMIA.value == 5
    assert Interpretation.OLIGO_ASTHENOSPERMIA.label == "Oligoasthenospermia"


def test_notes_for_normal_sample():
    notes = generate_interpretation_notes(_metrics())
    assert "concentration within reference" in notes
    assert "Progressive motility within reference" in notes
    assert "Total motility within reference" in notes
    assert "velocity within normal range" in notes
    assert notes.endswith(".")


def test_notes_flag_low_values():
    notes = generate_interpretation_notes(_metrics(conc=5.0, pr=10.0, total_motility=20.0, vcl=10.0))
    assert "below reference (oligospermia)" in notes
    assert "Progressive motility below reference" in notes
    assert "Total motility below reference" in notes
    assert "velocity is low" in notes


def test_notes_high_velocity():
    assert "velocity is high" in generate_interpretation_notes(_metrics(vcl=80.0))


def test_notes_mark_missing_data():
    m = _metrics(total=3, tracked=0, pr=0.0, total_motility=0.0, vcl=None)
    notes = generate_interpretation_notes(m)
    assert "Progressive motility: insufficient data" in notes
    assert "Velocity: insufficient data" in notes


def test_counted_but_untracked_sample_is_flagged_as_missing_data():
    m = _metrics(total=5, tracked=0, conc=40.0, pr=0.0, total_motility=0.0, vcl=None)
    assert classify_population(m) == Interpretation.ASTHENOSPERMIA
    assert "reflects missing data" in generate_interpretation_notes(m)


def test_empty_sample_notes_do_not_mention_classification_gap():
    m = _metrics(total=0, tracked=0, conc=0.0, pr=0.0, total_motility=0.0, vcl=None)
    assert "reflects missing data" not in generate_interpretation_notes(m)

import pytest

from aidloop.core.algorithms.prediction import (
    MAX_PREDICTED_BG,
    MIN_PREDICTED_BG,
    PredictionEngine,
    clamp_bg,
)


def test_clamp_bg_bounds():
    assert clamp_bg(12.0) == MIN_PREDICTED_BG
    assert clamp_bg(950.0) == MAX_PREDICTED_BG
    assert clamp_bg(123.4) == 123.4


def test_insulin_requirement_never_negative():
    # 120 mg/dL, target 100, ISF 50 -> 0.4U needed, but 2.0U already on board
    assert PredictionEngine.insulin_requirement(120.0, 100.0, 50.0, 2.0) == 0.0
    assert PredictionEngine.insulin_requirement(200.0, 100.0, 50.0, 0.5) == pytest.approx(1.5)
    assert PredictionEngine.insulin_requirement(200.0, 100.0, 0.0, 0.0) == 0.0


def test_prediction_with_insulin_on_board_needs_no_more_insulin():
    engine = PredictionEngine()
    result = engine.predict(120.0, iob=2.0, cob=0.0, isf=50.0, cr=10.0, basal_rate=0.8, target_bg=100.0)

    assert result.insulin_req == 0.0
    assert result.microbolus == 0.0
    assert result.eventual_bg < 120.0
    for line in (result.predictions.iob, result.predictions.zt, result.predictions.cob, result.predictions.uam):
        assert len(line) == 48
        assert line[0] == 120


def test_trajectories_are_clamped():
    engine = PredictionEngine()
    low = engine.predict(45.0, iob=10.0, cob=0.0, isf=100.0, cr=10.0, basal_rate=0.0, target_bg=100.0)
    high = engine.predict(390.0, iob=0.0, cob=200.0, isf=100.0, cr=5.0, basal_rate=2.0, target_bg=100.0)

    assert min(low.predictions.iob) == MIN_PREDICTED_BG
    assert max(high.predictions.cob) == MAX_PREDICTED_BG
    for line in (low.predictions.iob, high.predictions.cob, high.predictions.zt):
        assert all(MIN_PREDICTED_BG <= value <= MAX_PREDICTED_BG for value in line)


def test_carbs_raise_only_the_cob_line():
    engine = PredictionEngine()
    result = engine.predict(100.0, iob=0.0, cob=40.0, isf=50.0, cr=10.0, basal_rate=0.0, target_bg=100.0)

    assert set(result.predictions.iob) == {100}
    assert result.predictions.zt == result.predictions.iob
    assert result.predictions.cob[-1] > 100
    assert result.eventual_bg == result.cob_pred_bg
    assert result.min_pred_bg == 100.0


@pytest.mark.parametrize("isf, cr", [(0.0, 10.0), (50.0, 0.0)])
def test_zero_sensitivity_or_ratio_skips_carb_effect(isf, cr):
    engine = PredictionEngine()
    result = engine.predict(150.0, iob=1.0, cob=30.0, isf=isf, cr=cr, basal_rate=0.8, target_bg=100.0)

    assert result.predictions.cob == result.predictions.iob
    if isf == 0.0:
        assert result.insulin_req == 0.0


def test_prediction_is_deterministic():
    engine = PredictionEngine()
    args = dict(current_bg=160.0, iob=0.7, cob=25.0, isf=45.0, cr=12.0, basal_rate=0.9, target_bg=105.0, deviation=3.0)

    assert engine.predict(**args) == engine.predict(**args)


def test_microbolus_capped_and_reported_in_reason():
    engine = PredictionEngine()
    result = engine.predict(200.0, iob=0.0, cob=0.0, isf=50.0, cr=10.0, basal_rate=0.8, target_bg=100.0)

    assert result.insulin_req == pytest.approx(2.0)
    assert result.microbolus == pytest.approx(0.1)
    assert result.reason.endswith("Microbolusing 0.10U.")
    assert "Eventual BG 200.0 >= 100.0, insulinReq 2.00" in result.reason


def test_reason_without_microbolus_and_with_warnings():
    engine = PredictionEngine()
    result = engine.predict(
        100.0, iob=0.0, cob=0.0, isf=50.0, cr=10.0, basal_rate=0.8, target_bg=100.0,
        warnings=("isf defaulted to 50",),
    )

    assert result.reason.startswith("Warning: isf defaulted to 50; COB: 0, Dev: 0.0, BGI: 0.0, ISF: 50.0, CR: 10")
    assert result.reason.endswith("insulinReq 0.00; No microbolus.")


def test_uam_line_follows_positive_deviation():
    engine = PredictionEngine()
    result = engine.predict(120.0, iob=0.0, cob=0.0, isf=50.0, cr=10.0, basal_rate=0.0, target_bg=100.0, deviation=4.0)

    assert result.predictions.uam[-1] > result.predictions.iob[-1]
    assert result.uam_pred_bg > 120.0


def test_engine_rejects_non_positive_insulin_duration():
    with pytest.raises(ValueError):
        PredictionEngine(insulin_duration_hours=0)

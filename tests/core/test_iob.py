from datetime import datetime, timedelta, timezone

import pytest

from aidloop.core.iob import InsulinOnBoardCalculator
from aidloop.core.models import DoseKind, InsulinDoseEvent
from aidloop.core.profile import Profile

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
PROFILE = Profile.flat(basal_rate=0.8)


def _bolus(minutes_ago, units):
    return InsulinDoseEvent(NOW - timedelta(minutes=minutes_ago), DoseKind.BOLUS, amount=units)


def test_bolus_decays_linearly():
    state = InsulinOnBoardCalculator(dia_hours=4).calculate([_bolus(60, 2.0)], PROFILE, NOW)

    assert state.iob == pytest.approx(1.5)
    assert state.bolus_iob == pytest.approx(1.5)
    assert state.activity == pytest.approx(2.0 / 240.0)


def test_expired_and_future_boluses_ignored():
    events = [_bolus(300, 5.0), _bolus(-10, 3.0)]
    state = InsulinOnBoardCalculator(dia_hours=4).calculate(events, PROFILE, NOW)

    assert state.iob == 0.0
    assert state.activity == 0.0


def test_zero_temp_counts_as_negative_basal_insulin():
    events = [
        InsulinDoseEvent(NOW - timedelta(minutes=60), DoseKind.TEMP_BASAL_START, amount=0.0, duration_minutes=30),
        _bolus(10, 1.0),
    ]
    state = InsulinOnBoardCalculator(dia_hours=4).calculate(events, PROFILE, NOW)

    assert state.basal_iob < 0
    assert state.bolus_iob == pytest.approx(1.0 * (1 - 10 / 240.0), abs=1e-3)
    assert state.iob == pytest.approx(state.bolus_iob + state.basal_iob, abs=2e-3)


def test_iob_never_negative():
    events = [InsulinDoseEvent(NOW - timedelta(minutes=30), DoseKind.SUSPEND)]
    state = InsulinOnBoardCalculator(dia_hours=4).calculate(events, PROFILE, NOW)

    assert state.basal_iob < 0
    assert state.iob == 0.0


def test_temp_basal_ended_by_next_event():
    calc = InsulinOnBoardCalculator(dia_hours=4)
    events = [
        InsulinDoseEvent(NOW - timedelta(minutes=60), DoseKind.TEMP_BASAL_START, amount=2.0, duration_minutes=60),
        InsulinDoseEvent(NOW - timedelta(minutes=30), DoseKind.TEMP_BASAL_END),
    ]
    _, basal = calc.treatments(events, PROFILE, NOW)

    assert len(basal) == 6
    assert sum(units for _, units in basal) == pytest.approx((2.0 - 0.8) * 0.5)


def test_invalid_duration_rejected():
    with pytest.raises(ValueError):
        InsulinOnBoardCalculator(dia_hours=0)

from datetime import datetime, timezone

import pytest

from aidloop.core.profile import DEFAULT_ISF, Profile, schedule_value


def _at(hour, minute=0):
    return datetime(2024, 5, 1, hour, minute, tzinfo=timezone.utc)


def test_schedule_value_picks_entry_in_effect():
    schedule = ((0, 0.6), (360, 0.9), (1320, 0.7))

    assert schedule_value(schedule, _at(3))[1] == 0.6
    assert schedule_value(schedule, _at(6))[1] == 0.9
    assert schedule_value(schedule, _at(23, 30))[1] == 0.7


def test_schedule_without_midnight_entry_wraps_to_last():
    schedule = ((60, 40.0), (600, 60.0))

    assert schedule_value(schedule, _at(0, 30))[1] == 60.0
    assert schedule_value((), _at(0, 30)) is None


def test_target_is_range_midpoint():
    profile = Profile(target_schedule=((0, 90.0, 110.0), (720, 100.0, 120.0)))

    assert profile.target_at(_at(8)) == 100.0
    assert profile.target_at(_at(13)) == 110.0


def test_resolve_uses_schedules():
    profile = Profile.flat(isf=45.0, carb_ratio=12.0, basal_rate=1.1, target_bg=105.0)
    snapshot = profile.resolve(_at(12))

    assert snapshot.isf == 45.0
    assert snapshot.carb_ratio == 12.0
    assert snapshot.basal_rate == 1.1
    assert snapshot.target_bg == 105.0
    assert snapshot.warnings == ()


def test_resolve_substitutes_defaults_for_unusable_values():
    profile = Profile(isf_schedule=((0, 0.0),), carb_ratio_schedule=())
    snapshot = profile.resolve(_at(12))

    assert snapshot.isf == DEFAULT_ISF
    assert snapshot.carb_ratio == 15.0
    assert "isf defaulted to 50" in snapshot.warnings
    assert "carb_ratio defaulted to 15" in snapshot.warnings


def test_resolve_defaults_non_positive_durations():
    profile = Profile.flat(dia_hours=0.0, carb_absorption_hours=-1.0)
    snapshot = profile.resolve(_at(12))

    assert snapshot.dia_hours == 4.0
    assert snapshot.carb_absorption_hours == 4.0
    assert "dia_hours defaulted to 4" in snapshot.warnings
    assert "carb_absorption_hours defaulted to 4" in snapshot.warnings

    resolved = profile.with_durations(snapshot)
    assert resolved.dia_hours == 4.0
    assert resolved.carb_absorption_hours == 4.0
    assert resolved.isf_schedule == profile.isf_schedule


def test_zero_basal_is_allowed():
    snapshot = Profile.flat(basal_rate=0.0).resolve(_at(12))

    assert snapshot.basal_rate == 0.0
    assert snapshot.warnings == ()


def test_to_dict_lists_schedules():
    data = Profile.flat(isf=40.0).to_dict()

    assert data["isf_schedule"] == [[0, 40.0]]
    assert data["max_bolus"] == pytest.approx(10.0)

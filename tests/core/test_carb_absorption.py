from datetime import datetime, timedelta, timezone

import pytest

from aidloop.core.algorithms.carb_absorption import CarbAbsorptionAggregator
from aidloop.core.models import CarbEntry, CarbSource, GlucoseSample
from aidloop.core.profile import Profile

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
# ISF 50, CR 10 and a 8 mg/dL/5m floor: every bucket after a meal absorbs 1.6g.
PROFILE = Profile.flat(isf=50.0, carb_ratio=10.0, basal_rate=0.8, target_bg=100.0)


def _rising_glucose(minutes=360, start=100.0):
    return [
        GlucoseSample(NOW - timedelta(minutes=m), start + (minutes - m) / 5.0)
        for m in range(minutes, -1, -5)
    ]


def _entry(minutes_ago, grams, source=CarbSource.MANUAL, deleted=False):
    return CarbEntry(NOW - timedelta(minutes=minutes_ago), grams, source=source, deleted=deleted)


def test_no_entries_reports_zero_cob():
    result = CarbAbsorptionAggregator().aggregate([], _rising_glucose(), PROFILE, NOW)

    assert result.cob == 0.0
    assert result.carbs == 0.0
    assert result.last_carb_time is None


def test_meal_still_absorbing_counts_every_entry():
    entries = [_entry(100, 40.0), _entry(10, 10.0)]
    result = CarbAbsorptionAggregator().aggregate(entries, _rising_glucose(), PROFILE, NOW)

    assert result.carbs == pytest.approx(50.0)
    assert result.cob == 18.0
    assert result.absorbed_so_far == pytest.approx(32.0)
    assert result.last_carb_time == NOW - timedelta(minutes=10)


def test_equal_apparent_cob_neither_resets_nor_partitions():
    # both entries are fully absorbed, so each shows an apparent COB of 0
    entries = [_entry(300, 40.0), _entry(210, 10.0)]
    result = CarbAbsorptionAggregator().aggregate(entries, _rising_glucose(), PROFILE, NOW)

    assert result.carbs == pytest.approx(50.0)
    assert result.cob == 0.0
    assert result.absorbed_so_far == pytest.approx(50.0)


def test_older_meal_absorbed_before_newer_entry_is_not_double_counted():
    # 40g logged, then 10g more while the first is still being absorbed
    entries = [_entry(300, 40.0), _entry(20, 10.0)]
    result = CarbAbsorptionAggregator().aggregate(entries, _rising_glucose(), PROFILE, NOW)

    assert result.carbs == pytest.approx(10.0)
    assert result.cob == 4.0
    assert result.absorbed_so_far == pytest.approx(6.4)


def test_partition_tracks_carb_sources():
    entries = [_entry(300, 40.0, CarbSource.MANUAL), _entry(20, 10.0, CarbSource.SENSOR)]
    result = CarbAbsorptionAggregator().aggregate(entries, _rising_glucose(), PROFILE, NOW)

    assert result.sensor_carbs == pytest.approx(10.0)
    assert result.manual_carbs == 0.0
    assert result.journal_carbs == 0.0


def test_deleted_and_out_of_window_entries_ignored():
    entries = [
        _entry(100, 40.0),
        _entry(10, 10.0, deleted=True),
        _entry(7 * 60, 60.0),
        _entry(5, 0.5),
    ]
    result = CarbAbsorptionAggregator().aggregate(entries, _rising_glucose(), PROFILE, NOW)

    assert result.carbs == pytest.approx(40.0)
    assert result.cob == 8.0


def test_cob_capped_at_profile_max():
    profile = Profile.flat(isf=50.0, carb_ratio=10.0, max_cob=10.0)
    entries = [_entry(100, 40.0), _entry(10, 10.0)]
    result = CarbAbsorptionAggregator().aggregate(entries, _rising_glucose(), profile, NOW)

    assert result.cob == 10.0


def test_aggregate_is_idempotent():
    aggregator = CarbAbsorptionAggregator()
    entries = [_entry(100, 40.0), _entry(10, 10.0)]
    glucose = _rising_glucose()

    first = aggregator.aggregate(entries, glucose, PROFILE, NOW)
    second = aggregator.aggregate(entries, glucose, PROFILE, NOW)

    assert first == second


def test_deviation_stats_for_steady_rise():
    result = CarbAbsorptionAggregator().aggregate([], _rising_glucose(), PROFILE, NOW)
    stats = result.deviation_stats

    assert stats.current == pytest.approx(1.0)
    assert stats.max == pytest.approx(1.0)
    assert stats.min == pytest.approx(1.0)
    assert stats.slope_from_max == 0.0
    assert stats.all_deviations[0] == 1
    assert result.uam is True


def test_deviation_stats_default_without_data():
    result = CarbAbsorptionAggregator().aggregate([], [], PROFILE, NOW)

    assert result.deviation_stats.current == 0.0
    assert result.deviation_stats.min == 999.0
    assert result.uam is False


def test_bucket_glucose_interpolates_gaps():
    samples = [
        GlucoseSample(NOW, 120.0),
        GlucoseSample(NOW - timedelta(minutes=20), 100.0),
    ]
    buckets = CarbAbsorptionAggregator().bucket_glucose(samples, NOW)

    assert [value for _, value in buckets] == [120.0, 115.0, 110.0, 105.0, 100.0]
    assert buckets[1][0] == NOW - timedelta(minutes=5)


def test_bucket_glucose_averages_close_readings_and_drops_errors():
    samples = [
        GlucoseSample(NOW, 120.0),
        GlucoseSample(NOW - timedelta(minutes=1), 110.0),
        GlucoseSample(NOW - timedelta(minutes=5), 38.0),
        GlucoseSample(NOW - timedelta(minutes=6), 100.0),
    ]
    buckets = CarbAbsorptionAggregator().bucket_glucose(samples, NOW)

    assert [value for _, value in buckets] == [115.0, 100.0]

from datetime import datetime, timedelta, timezone

import pytest

from aidloop.core.errors import DataFault
from aidloop.core.models import GlucoseSample
from aidloop.core.safety.input_validator import GlucoseInputValidator, is_flat

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _samples(values, newest_age=0, spacing=5):
    # values are oldest first
    count = len(values)
    return [
        GlucoseSample(NOW - timedelta(minutes=newest_age + spacing * (count - 1 - i)), value)
        for i, value in enumerate(values)
    ]


def test_validator_returns_latest_reading():
    latest = GlucoseInputValidator().validate(_samples([119.0, 122.0, 120.0]), NOW)

    assert latest.value == 120.0
    assert latest.timestamp == NOW


def test_validator_rejects_missing_data():
    with pytest.raises(DataFault, match="Not enough glucose data") as excinfo:
        GlucoseInputValidator().validate([], NOW)
    assert excinfo.value.reason == DataFault.MISSING


def test_validator_rejects_stale_data():
    with pytest.raises(DataFault) as excinfo:
        GlucoseInputValidator().validate(_samples([110.0, 115.0], newest_age=15), NOW)
    assert excinfo.value.reason == DataFault.STALE


def test_validator_rejects_implausible_glucose():
    with pytest.raises(DataFault, match="BIOLOGICAL_PLAUSIBILITY_ERROR") as excinfo:
        GlucoseInputValidator().validate(_samples([650.0]), NOW)
    assert excinfo.value.reason == DataFault.IMPLAUSIBLE


def test_validator_rejects_unrealistic_glucose_jump():
    validator = GlucoseInputValidator(max_glucose_delta_per_5_min=20.0)

    with pytest.raises(DataFault, match="RATE_OF_CHANGE_ERROR"):
        validator.validate(_samples([100.0, 200.0]), NOW)


def test_validator_scales_allowed_jump_with_gap():
    validator = GlucoseInputValidator(max_glucose_delta_per_5_min=20.0)

    latest = validator.validate(_samples([100.0, 150.0], spacing=15), NOW)
    assert latest.value == 150.0


def test_validator_rejects_flat_signal():
    with pytest.raises(DataFault) as excinfo:
        GlucoseInputValidator().validate(_samples([100.0, 100.0, 100.0, 100.0]), NOW)
    assert excinfo.value.reason == DataFault.FLAT


def test_validator_uses_flat_verdict_when_given():
    validator = GlucoseInputValidator()

    assert validator.validate(_samples([100.0, 100.0, 100.0, 100.0]), NOW, flat=False).value == 100.0
    with pytest.raises(DataFault, match="flat"):
        validator.validate(_samples([98.0, 99.0, 100.0, 101.0]), NOW, flat=True)


def test_is_flat_needs_a_full_window():
    assert is_flat(_samples([100.0, 100.0, 100.0]), window=4) is False
    assert is_flat(_samples([98.0, 100.0, 100.0, 100.0, 100.0]), window=4) is True
    assert is_flat(_samples([100.0, 100.0, 101.0, 100.0]), window=4) is False

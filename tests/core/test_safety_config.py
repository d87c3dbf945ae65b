from aidloop.core.algorithms.determine_basal import BasalDeterminator
from aidloop.core.safety import SafetyConfig
from aidloop.core.safety.governor import DoseSafetyGovernor
from aidloop.core.safety.input_validator import GlucoseInputValidator


def test_input_validator_uses_safety_config():
    config = SafetyConfig(min_glucose=55.0, max_glucose=350.0, max_glucose_delta_per_5_min=15.0,
                          max_glucose_age_minutes=20.0, flat_window_samples=6)
    validator = GlucoseInputValidator(safety_config=config)

    assert validator.min_glucose == 55.0
    assert validator.max_glucose == 350.0
    assert validator.max_glucose_delta_per_5_min == 15.0
    assert validator.max_glucose_age_minutes == 20.0
    assert validator.flat_window_samples == 6


def test_governor_uses_safety_config():
    config = SafetyConfig(min_bolus_units=0.05, neutral_temp_minutes=45)
    governor = DoseSafetyGovernor(safety_config=config)

    assert governor.min_bolus_units == 0.05
    assert governor.neutral_temp_minutes == 45


def test_determinator_keeps_safety_config():
    config = SafetyConfig(low_glucose_floor=50.0)
    determinator = BasalDeterminator(safety_config=config)

    assert determinator.safety_config.low_glucose_floor == 50.0
    assert BasalDeterminator().safety_config.temp_basal_minutes == 30

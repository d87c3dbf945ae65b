from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SafetyConfig:
    """
    Central safety configuration for input validation, the dose governor and the loop.
    """
    # Glucose input validation
    min_glucose: float = 39.0
    max_glucose: float = 600.0
    max_glucose_delta_per_5_min: float = 35.0
    max_glucose_age_minutes: float = 12.0
    flat_window_samples: int = 4

    # Prediction thresholds
    low_glucose_floor: float = 40.0  # threshold = target - 0.5 * (target - floor)
    temp_basal_minutes: int = 30
    max_temp_multiplier: float = 2.0  # insulinReq multiplier when raising a temp

    # Enactment
    suggestion_expiration_minutes: float = 10.0
    neutral_temp_minutes: int = 30
    min_bolus_units: float = 0.0  # rounded boluses at or below this are skipped
    pump_data_timeout_seconds: float = 60.0

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from aidloop.core.errors import DataFault
from aidloop.core.models import GlucoseSample
from aidloop.core.safety.config import SafetyConfig

logger = logging.getLogger("aidloop.safety")


def is_flat(samples: Sequence[GlucoseSample], window: int = 4) -> bool:
    """
    True when the newest ``window`` readings are all identical.

    A sensor that reports the same value repeatedly is treated as faulty rather
    than as stable glucose. Fewer than ``window`` readings are never flat.
    """
    if window < 2 or len(samples) < window:
        return False
    newest = sorted(samples, key=lambda s: s.timestamp, reverse=True)[:window]
    values = np.array([s.value for s in newest], dtype=float)
    return bool(np.ptp(values) == 0.0)


class GlucoseInputValidator:
    """
    Gate on the glucose history before any dosing decision is made.

    Checks, in order: data present, latest reading fresh, latest reading
    physiologically plausible, no impossible jump, signal not flat.
    Every failure raises :class:`DataFault` with the matching reason.
    """

    def __init__(self,
                 min_glucose: float = 39.0,
                 max_glucose: float = 600.0,
                 max_glucose_delta_per_5_min: float = 35.0,
                 max_glucose_age_minutes: float = 12.0,
                 flat_window_samples: int = 4,
                 safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            min_glucose = safety_config.min_glucose
            max_glucose = safety_config.max_glucose
            max_glucose_delta_per_5_min = safety_config.max_glucose_delta_per_5_min
            max_glucose_age_minutes = safety_config.max_glucose_age_minutes
            flat_window_samples = safety_config.flat_window_samples

        self.min_glucose = min_glucose
        self.max_glucose = max_glucose
        self.max_glucose_delta_per_5_min = max_glucose_delta_per_5_min
        self.max_glucose_age_minutes = max_glucose_age_minutes
        self.flat_window_samples = flat_window_samples

    def validate(
        self,
        samples: Sequence[GlucoseSample],
        now: datetime,
        flat: Optional[bool] = None,
    ) -> GlucoseSample:
        """
        Validate recent glucose and return the latest reading.

        ``flat`` takes a flatness verdict from the glucose store; when omitted
        it is computed from ``samples``.

        Raises:
            DataFault: If the data is missing, stale, implausible or flat.
        """
        if not samples:
            raise DataFault(DataFault.MISSING, "Not enough glucose data")

        ordered = sorted(samples, key=lambda s: s.timestamp, reverse=True)
        latest = ordered[0]

        # 1. Freshness
        age_minutes = (now - latest.timestamp).total_seconds() / 60.0
        if age_minutes >= self.max_glucose_age_minutes:
            raise DataFault(
                DataFault.STALE,
                f"Glucose data is stale: latest reading is {age_minutes:.1f} min old "
                f"(limit {self.max_glucose_age_minutes:.0f} min)",
            )

        # 2. Absolute plausibility
        if not (self.min_glucose <= latest.value <= self.max_glucose):
            raise DataFault(
                DataFault.IMPLAUSIBLE,
                f"BIOLOGICAL_PLAUSIBILITY_ERROR: Glucose {latest.value} mg/dL is outside the "
                f"valid range [{self.min_glucose}, {self.max_glucose}].",
            )

        # 3. Rate of change between the two newest readings
        if len(ordered) > 1:
            previous = ordered[1]
            time_delta = (latest.timestamp - previous.timestamp).total_seconds() / 60.0
            if time_delta > 0:
                allowed_delta = self.max_glucose_delta_per_5_min * max(1.0, time_delta / 5.0)
                glucose_delta = abs(latest.value - previous.value)
                if glucose_delta > allowed_delta:
                    raise DataFault(
                        DataFault.IMPLAUSIBLE,
                        f"RATE_OF_CHANGE_ERROR: Glucose changed by {glucose_delta:.1f} mg/dL in "
                        f"{time_delta:.1f} min (limit {allowed_delta:.1f} mg/dL).",
                    )

        # 4. Flat signal
        if flat is None:
            flat = is_flat(ordered, self.flat_window_samples)
        if flat:
            raise DataFault(
                DataFault.FLAT,
                f"Glucose data is flat: last {self.flat_window_samples} readings are identical",
            )

        logger.debug("Glucose %.0f mg/dL accepted (%.1f min old)", latest.value, age_minutes)
        return latest

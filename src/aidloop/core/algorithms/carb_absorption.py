from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from aidloop.core.iob import InsulinOnBoardCalculator
from aidloop.core.models import CarbEntry, CarbSource, GlucoseSample, InsulinDoseEvent
from aidloop.core.profile import Profile

logger = logging.getLogger("aidloop.meal")

MIN_VALID_GLUCOSE = 39.0
MEAL_WINDOW_HOURS = 6.0
DEVIATION_WINDOW_MINUTES = 45.0
MIN_CARB_GRAMS = 1.0


@dataclass(frozen=True)
class DeviationPoint:
    """Deviation of one resampled bucket from the insulin-only model."""
    timestamp: datetime
    glucose: float
    deviation: float  # 5-minute delta minus BGI
    avg_deviation: float  # 15-minute average delta minus BGI
    bgi: float
    isf: float
    carb_ratio: float


@dataclass(frozen=True)
class DeviationStats:
    current: float = 0.0
    max: float = 0.0
    min: float = 999.0
    slope_from_max: float = 0.0
    slope_from_min: float = 999.0
    all_deviations: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentDeviation": self.current,
            "maxDeviation": self.max,
            "minDeviation": self.min,
            "slopeFromMaxDeviation": self.slope_from_max,
            "slopeFromMinDeviation": self.slope_from_min,
            "allDeviations": list(self.all_deviations),
        }


@dataclass(frozen=True)
class MealResult:
    cob: float
    carbs: float
    absorbed_so_far: float
    sensor_carbs: float = 0.0
    manual_carbs: float = 0.0
    journal_carbs: float = 0.0
    last_carb_time: Optional[datetime] = None
    deviation_stats: DeviationStats = field(default_factory=DeviationStats)

    @property
    def uam(self) -> bool:
        """Unannounced meal signature: glucose currently rising above the insulin model."""
        return self.deviation_stats.current > 0 and self.deviation_stats.max > 0

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mealCOB": self.cob,
            "carbs": self.carbs,
            "absorbedSoFar": self.absorbed_so_far,
            "sensorCarbs": self.sensor_carbs,
            "manualCarbs": self.manual_carbs,
            "journalCarbs": self.journal_carbs,
            "lastCarbTime": self.last_carb_time.isoformat() if self.last_carb_time else None,
            "uam": self.uam,
        }
        payload.update(self.deviation_stats.to_dict())
        return payload


class CarbAbsorptionAggregator:
    """
    Deviation based carbs-on-board detection.

    Glucose is resampled into 5 minute buckets, each bucket is compared against
    the glucose movement the active insulin alone explains, and the surplus is
    credited as absorbed carbohydrate. Entries are walked newest first so that
    meals already absorbed before a later entry was logged are not counted twice.

    The object holds no state between calls: identical inputs give identical output.
    """

    def __init__(
        self,
        meal_window_hours: float = MEAL_WINDOW_HOURS,
        deviation_window_minutes: float = DEVIATION_WINDOW_MINUTES,
        max_interpolation_minutes: float = 240.0,
    ):
        self.meal_window_hours = meal_window_hours
        self.deviation_window_minutes = deviation_window_minutes
        self.max_interpolation_minutes = max_interpolation_minutes

    # ------------------------------------------------------------------
    # Resampling
    # ------------------------------------------------------------------

    def bucket_glucose(self, glucose_history: Iterable[GlucoseSample], now: datetime) -> List[Tuple[datetime, float]]:
        """
        Resample glucose newest first at roughly 5 minute spacing.

        Gaps over 8 minutes are linearly interpolated in 5 minute steps (at most
        ``max_interpolation_minutes`` worth), readings 2-8 minutes apart open a new
        bucket and readings within 2 minutes are averaged into the current one.
        """
        earliest = now - timedelta(hours=self.meal_window_hours, minutes=20)
        samples = sorted(
            (
                s for s in glucose_history
                if s.value >= MIN_VALID_GLUCOSE and earliest <= s.timestamp <= now
            ),
            key=lambda s: s.timestamp,
            reverse=True,
        )
        if not samples:
            return []

        buckets: List[List[Any]] = [[samples[0].timestamp, float(samples[0].value)]]
        for previous, current in zip(samples, samples[1:]):
            gap = (previous.timestamp - current.timestamp).total_seconds() / 60.0
            if gap > 8:
                remaining = min(self.max_interpolation_minutes, gap)
                last_time = previous.timestamp
                last_value = float(previous.value)
                while remaining > 5:
                    last_time = last_time - timedelta(minutes=5)
                    last_value = last_value + 5.0 / remaining * (current.value - last_value)
                    buckets.append([last_time, float(round(last_value))])
                    remaining -= 5
                buckets.append([current.timestamp, float(current.value)])
            elif gap > 2:
                buckets.append([current.timestamp, float(current.value)])
            else:
                buckets[-1][1] = (buckets[-1][1] + current.value) / 2.0
        return [(t, v) for t, v in buckets]

    def deviation_points(
        self,
        buckets: Sequence[Tuple[datetime, float]],
        profile: Profile,
        now: datetime,
        dose_history: Iterable[InsulinDoseEvent] = (),
    ) -> List[DeviationPoint]:
        """Compute deviations for every bucket that has three older neighbours."""
        if len(buckets) < 4:
            return []
        iob_calc = InsulinOnBoardCalculator(dia_hours=profile.dia_hours)
        since = buckets[-1][0] - timedelta(hours=profile.dia_hours)
        boluses, basal = iob_calc.treatments(dose_history, profile, now, since=since)

        values = np.array([v for _, v in buckets], dtype=float)
        avg_deltas = (values[:-3] - values[3:]) / 3.0
        deltas = values[:-3] - values[1:-2]

        points: List[DeviationPoint] = []
        for i, (timestamp, glucose) in enumerate(buckets[:-3]):
            isf = profile.isf_at(timestamp) or 0.0
            carb_ratio = profile.carb_ratio_at(timestamp) or 0.0
            activity = iob_calc.state_at(boluses, basal, timestamp).activity
            bgi = round(-activity * isf * 5, 2)
            points.append(
                DeviationPoint(
                    timestamp=timestamp,
                    glucose=glucose,
                    deviation=float(deltas[i]) - bgi,
                    avg_deviation=round(float(avg_deltas[i]) - bgi, 3),
                    bgi=bgi,
                    isf=isf,
                    carb_ratio=carb_ratio,
                )
            )
        return points

    # ------------------------------------------------------------------
    # Statistics and absorption
    # ------------------------------------------------------------------

    def deviation_stats(self, points: Sequence[DeviationPoint], now: datetime) -> DeviationStats:
        window = timedelta(minutes=self.deviation_window_minutes)
        recent = [p for p in points if timedelta(0) <= now - p.timestamp <= window]
        if not recent or recent[0] is not points[0]:
            return DeviationStats()

        current = recent[0].avg_deviation
        max_dev, min_dev = 0.0, 999.0
        slope_from_max, slope_from_min = 0.0, 999.0
        all_deviations = [int(round(current))]
        for point in recent[1:]:
            minutes_ago = (now - point.timestamp).total_seconds() / 60.0
            if minutes_ago <= 0:
                continue
            slope = (current - point.avg_deviation) / minutes_ago * 5
            if point.avg_deviation > max_dev:
                slope_from_max = min(0.0, slope)
                max_dev = point.avg_deviation
            if point.avg_deviation < min_dev:
                slope_from_min = max(0.0, slope)
                min_dev = point.avg_deviation
            all_deviations.append(int(round(point.avg_deviation)))

        return DeviationStats(
            current=round(current, 2),
            max=round(max_dev, 2),
            min=round(min_dev, 2),
            slope_from_max=round(slope_from_max, 3),
            slope_from_min=round(slope_from_min, 3),
            all_deviations=tuple(all_deviations),
        )

    @staticmethod
    def carbs_absorbed_since(
        points: Sequence[DeviationPoint],
        meal_time: datetime,
        current_deviation: float,
        min_5m_carb_impact: float,
    ) -> float:
        """Integrate deviations after ``meal_time`` into grams, floored at the minimum carb impact."""
        absorbed = 0.0
        for point in points:
            if point.timestamp <= meal_time:
                continue
            if point.isf <= 0 or point.carb_ratio <= 0:
                continue
            impact = max(point.deviation, current_deviation / 2.0, min_5m_carb_impact)
            absorbed += impact * point.carb_ratio / point.isf
        return absorbed

    def aggregate(
        self,
        carb_entries: Iterable[CarbEntry],
        glucose_history: Iterable[GlucoseSample],
        profile: Profile,
        now: datetime,
        dose_history: Iterable[InsulinDoseEvent] = (),
    ) -> MealResult:
        dose_history = list(dose_history)
        buckets = self.bucket_glucose(glucose_history, now)
        points = self.deviation_points(buckets, profile, now, dose_history)
        stats = self.deviation_stats(points, now)

        window_start = now - timedelta(hours=self.meal_window_hours)
        entries = sorted(
            (
                e for e in carb_entries
                if not e.deleted and e.grams >= MIN_CARB_GRAMS and window_start <= e.timestamp <= now
            ),
            key=lambda e: e.timestamp,
            reverse=True,
        )
        if not entries:
            return MealResult(cob=0.0, carbs=0.0, absorbed_so_far=0.0, deviation_stats=stats)

        totals = {source: 0.0 for source in CarbSource}
        partition = {source: 0.0 for source in CarbSource}
        included = 0.0
        max_cob_observed = 0.0
        for index, entry in enumerate(entries):
            included += entry.grams
            totals[entry.source] += entry.grams
            absorbed = self.carbs_absorbed_since(
                points, entry.timestamp, stats.current, profile.min_5m_carb_impact
            )
            apparent_cob = max(0.0, included - absorbed)
            if index == 0 or apparent_cob > max_cob_observed:
                # A new peak: everything counted so far is still on board.
                max_cob_observed = apparent_cob
                partition = {source: 0.0 for source in CarbSource}
            elif apparent_cob < max_cob_observed:
                # This entry was absorbed before the newer ones were logged.
                partition[entry.source] += entry.grams

        carbs = included - sum(partition.values())
        absorbed_so_far = carbs - max_cob_observed
        cob = max(0.0, min(profile.max_cob, max_cob_observed))
        logger.debug(
            "Meal aggregate: %d entries, carbs %.1f g, COB %.1f g, partition %.1f g",
            len(entries), carbs, cob, sum(partition.values()),
        )
        return MealResult(
            cob=float(round(cob)),
            carbs=round(carbs, 3),
            absorbed_so_far=round(max(0.0, absorbed_so_far), 3),
            sensor_carbs=round(totals[CarbSource.SENSOR] - partition[CarbSource.SENSOR], 3),
            manual_carbs=round(totals[CarbSource.MANUAL] - partition[CarbSource.MANUAL], 3),
            journal_carbs=round(totals[CarbSource.JOURNAL] - partition[CarbSource.JOURNAL], 3),
            last_carb_time=entries[0].timestamp,
            deviation_stats=stats,
        )

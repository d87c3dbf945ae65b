from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence, Tuple

from aidloop.core.errors import AlgorithmFault

logger = logging.getLogger("aidloop.profile")

# Documented fallbacks used when a profile value is missing or unusable.
DEFAULT_ISF = 50.0
DEFAULT_CARB_RATIO = 15.0
DEFAULT_TARGET = 100.0
DEFAULT_BASAL = 0.8
DEFAULT_DIA_HOURS = 4.0
DEFAULT_CARB_ABSORPTION_HOURS = 4.0

ScheduleEntry = Tuple[int, float]  # (minutes after midnight, value)
TargetEntry = Tuple[int, float, float]  # (minutes after midnight, low, high)


def _minute_of_day(when: datetime) -> int:
    return when.hour * 60 + when.minute


def schedule_value(schedule: Sequence[Sequence[float]], when: datetime) -> Optional[Sequence[float]]:
    """Return the last schedule entry whose start offset is at or before ``when``."""
    if not schedule:
        return None
    ordered = sorted(schedule, key=lambda entry: entry[0])
    minute = _minute_of_day(when)
    selected = ordered[-1]  # wraps around midnight
    for entry in ordered:
        if entry[0] <= minute:
            selected = entry
        else:
            break
    return selected


@dataclass(frozen=True)
class ProfileSnapshot:
    """Profile values in effect at one instant, after fallbacks."""
    isf: float
    carb_ratio: float
    basal_rate: float
    target_bg: float
    warnings: Tuple[str, ...] = ()
    dia_hours: float = DEFAULT_DIA_HOURS
    carb_absorption_hours: float = DEFAULT_CARB_ABSORPTION_HOURS


@dataclass(frozen=True)
class Profile:
    """
    Therapy settings loaded once per loop iteration.

    Schedules are tuples of ``(offset_minutes, value)`` sorted by offset; the
    target schedule carries ``(offset_minutes, low, high)``.
    """
    isf_schedule: Tuple[ScheduleEntry, ...] = ((0, DEFAULT_ISF),)  # mg/dL per unit
    carb_ratio_schedule: Tuple[ScheduleEntry, ...] = ((0, DEFAULT_CARB_RATIO),)  # g per unit
    basal_schedule: Tuple[ScheduleEntry, ...] = ((0, DEFAULT_BASAL),)  # U/h
    target_schedule: Tuple[TargetEntry, ...] = ((0, DEFAULT_TARGET, DEFAULT_TARGET),)
    max_basal: float = 3.0  # U/h
    max_bolus: float = 10.0  # Units
    dia_hours: float = DEFAULT_DIA_HOURS
    min_5m_carb_impact: float = 8.0  # mg/dL per 5 min
    max_cob: float = 120.0  # grams
    carb_absorption_hours: float = DEFAULT_CARB_ABSORPTION_HOURS

    def isf_at(self, when: datetime) -> Optional[float]:
        entry = schedule_value(self.isf_schedule, when)
        return float(entry[1]) if entry is not None else None

    def carb_ratio_at(self, when: datetime) -> Optional[float]:
        entry = schedule_value(self.carb_ratio_schedule, when)
        return float(entry[1]) if entry is not None else None

    def basal_at(self, when: datetime) -> Optional[float]:
        entry = schedule_value(self.basal_schedule, when)
        return float(entry[1]) if entry is not None else None

    def target_at(self, when: datetime) -> Optional[float]:
        entry = schedule_value(self.target_schedule, when)
        if entry is None:
            return None
        return (float(entry[1]) + float(entry[2])) / 2.0

    def resolve(self, when: datetime) -> ProfileSnapshot:
        """
        Snapshot the schedules and insulin and carb durations at ``when``.

        Missing or non-positive values raise :class:`AlgorithmFault`, which is
        recovered here with the documented default and a warning for the reason string.
        """
        warnings: List[str] = []
        values = {
            "isf": self.isf_at(when),
            "carb_ratio": self.carb_ratio_at(when),
            "basal_rate": self.basal_at(when),
            "target_bg": self.target_at(when),
            "dia_hours": self.dia_hours,
            "carb_absorption_hours": self.carb_absorption_hours,
        }
        defaults = {
            "isf": DEFAULT_ISF,
            "carb_ratio": DEFAULT_CARB_RATIO,
            "basal_rate": DEFAULT_BASAL,
            "target_bg": DEFAULT_TARGET,
            "dia_hours": DEFAULT_DIA_HOURS,
            "carb_absorption_hours": DEFAULT_CARB_ABSORPTION_HOURS,
        }
        resolved: Dict[str, float] = {}
        for name, value in values.items():
            try:
                resolved[name] = self._checked(name, value, defaults[name])
            except AlgorithmFault as fault:
                logger.warning("%s; using default %s=%s", fault, fault.field, fault.default)
                warnings.append(f"{fault.field} defaulted to {fault.default:g}")
                resolved[name] = fault.default
        return ProfileSnapshot(warnings=tuple(warnings), **resolved)

    def with_durations(self, snapshot: ProfileSnapshot) -> "Profile":
        """Copy carrying the insulin and carb durations of a resolved snapshot."""
        return replace(
            self,
            dia_hours=snapshot.dia_hours,
            carb_absorption_hours=snapshot.carb_absorption_hours,
        )

    @staticmethod
    def _checked(name: str, value: Optional[float], default: float) -> float:
        if value is None:
            raise AlgorithmFault(f"Profile has no {name} entry", field=name, default=default)
        # A zero basal is a legitimate schedule entry; the other values divide.
        if name == "basal_rate":
            if value < 0:
                raise AlgorithmFault(f"Profile {name} is negative ({value})", field=name, default=default)
        elif value <= 0:
            raise AlgorithmFault(f"Profile {name} is not positive ({value})", field=name, default=default)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isf_schedule": [list(e) for e in self.isf_schedule],
            "carb_ratio_schedule": [list(e) for e in self.carb_ratio_schedule],
            "basal_schedule": [list(e) for e in self.basal_schedule],
            "target_schedule": [list(e) for e in self.target_schedule],
            "max_basal": self.max_basal,
            "max_bolus": self.max_bolus,
            "dia_hours": self.dia_hours,
            "min_5m_carb_impact": self.min_5m_carb_impact,
            "max_cob": self.max_cob,
            "carb_absorption_hours": self.carb_absorption_hours,
        }

    @classmethod
    def flat(
        cls,
        isf: float = DEFAULT_ISF,
        carb_ratio: float = DEFAULT_CARB_RATIO,
        basal_rate: float = DEFAULT_BASAL,
        target_bg: float = DEFAULT_TARGET,
        **kwargs: Any,
    ) -> "Profile":
        """Profile with a single all-day entry per schedule."""
        return cls(
            isf_schedule=((0, isf),),
            carb_ratio_schedule=((0, carb_ratio),),
            basal_schedule=((0, basal_rate),),
            target_schedule=((0, target_bg, target_bg),),
            **kwargs,
        )

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from aidloop.core.models import DoseKind, InsulinDoseEvent
from aidloop.core.profile import Profile

# (timestamp, units); temp basals and suspends become net-of-schedule pseudo-boluses.
Treatment = Tuple[datetime, float]


@dataclass(frozen=True)
class InsulinState:
    iob: float  # Units, never negative
    activity: float  # Units per minute
    bolus_iob: float = 0.0
    basal_iob: float = 0.0


class InsulinOnBoardCalculator:
    """
    Linear insulin action model in the OpenAPS style.

    Every treatment decays linearly to zero over the insulin action duration, so
    its activity is constant at ``units / dia_minutes`` while it is active.
    """

    def __init__(self, dia_hours: float = 4.0, segment_minutes: float = 5.0):
        if dia_hours <= 0:
            raise ValueError("dia_hours must be positive")
        self.dia_hours = dia_hours
        self.segment_minutes = segment_minutes

    @property
    def dia_minutes(self) -> float:
        return self.dia_hours * 60.0

    def treatments(
        self,
        events: Iterable[InsulinDoseEvent],
        profile: Profile,
        now: datetime,
        since: Optional[datetime] = None,
    ) -> Tuple[List[Treatment], List[Treatment]]:
        """Split pump history into bolus treatments and net basal pseudo-boluses."""
        if since is None:
            since = now - timedelta(minutes=self.dia_minutes)
        ordered = sorted((e for e in events if e.timestamp <= now), key=lambda e: e.timestamp)

        boluses: List[Treatment] = [
            (e.timestamp, e.amount)
            for e in ordered
            if e.kind == DoseKind.BOLUS and e.amount > 0 and e.timestamp >= since
        ]

        intervals: List[Tuple[datetime, datetime, float]] = []
        active: Optional[Tuple[datetime, Optional[datetime], float]] = None
        for event in ordered:
            if event.kind == DoseKind.BOLUS:
                continue
            if active is not None:
                start, end, rate = active
                stop = event.timestamp if end is None else min(end, event.timestamp)
                intervals.append((start, stop, rate))
                active = None
            if event.kind == DoseKind.TEMP_BASAL_START:
                active = (
                    event.timestamp,
                    event.timestamp + timedelta(minutes=event.duration_minutes),
                    max(0.0, event.amount),
                )
            elif event.kind == DoseKind.SUSPEND:
                active = (event.timestamp, None, 0.0)
        if active is not None:
            start, end, rate = active
            intervals.append((start, now if end is None else min(end, now), rate))

        basal: List[Treatment] = []
        step = timedelta(minutes=self.segment_minutes)
        for start, end, rate in intervals:
            t = max(start, since)
            while t < end:
                seg_end = min(t + step, end)
                minutes = (seg_end - t).total_seconds() / 60.0
                scheduled = profile.basal_at(t) or 0.0
                net = (rate - scheduled) * minutes / 60.0
                if net != 0.0:
                    basal.append((t, net))
                t = seg_end
        return boluses, basal

    def _contribution(self, treatments: Iterable[Treatment], when: datetime) -> Tuple[float, float]:
        iob = 0.0
        activity = 0.0
        for timestamp, units in treatments:
            elapsed = (when - timestamp).total_seconds() / 60.0
            if elapsed < 0 or elapsed >= self.dia_minutes:
                continue
            iob += units * (1.0 - elapsed / self.dia_minutes)
            activity += units / self.dia_minutes
        return iob, activity

    def state_at(
        self,
        boluses: List[Treatment],
        basal: List[Treatment],
        when: datetime,
    ) -> InsulinState:
        bolus_iob, bolus_activity = self._contribution(boluses, when)
        basal_iob, basal_activity = self._contribution(basal, when)
        return InsulinState(
            iob=round(max(0.0, bolus_iob + basal_iob), 3),
            activity=bolus_activity + basal_activity,
            bolus_iob=round(bolus_iob, 3),
            basal_iob=round(basal_iob, 3),
        )

    def calculate(
        self,
        events: Iterable[InsulinDoseEvent],
        profile: Profile,
        now: datetime,
    ) -> InsulinState:
        boluses, basal = self.treatments(events, profile, now)
        return self.state_at(boluses, basal, now)

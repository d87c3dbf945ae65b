from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class CarbSource(str, Enum):
    SENSOR = "sensor"
    MANUAL = "manual"
    JOURNAL = "journal"


class DoseKind(str, Enum):
    BOLUS = "bolus"
    TEMP_BASAL_START = "temp_basal_start"
    TEMP_BASAL_END = "temp_basal_end"
    SUSPEND = "suspend"
    RESUME = "resume"


@dataclass(frozen=True)
class GlucoseSample:
    """A single CGM reading in mg/dL."""
    timestamp: datetime
    value: float
    direction: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class CarbEntry:
    """Carbohydrate entry in grams. Superseded entries are marked ``deleted``."""
    timestamp: datetime
    grams: float
    source: CarbSource = CarbSource.MANUAL
    deleted: bool = False
    id: Optional[str] = None


@dataclass(frozen=True)
class InsulinDoseEvent:
    """
    Pump history record.

    ``amount`` is units for a bolus and U/h for a temp basal start.
    ``duration_minutes`` applies to temp basals only.
    """
    timestamp: datetime
    kind: DoseKind
    amount: float = 0.0
    duration_minutes: float = 0.0


@dataclass(frozen=True)
class PumpStatus:
    suspended: bool = False
    bolusing: bool = False
    reservoir: Optional[float] = None  # Units
    battery_percent: Optional[float] = None


@dataclass(frozen=True)
class TempBasal:
    rate: float  # U/h
    duration: float  # minutes
    timestamp: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        if self.timestamp is None:
            return self.duration > 0
        return self.timestamp + timedelta(minutes=self.duration) > now


@dataclass(frozen=True)
class Predictions:
    """Forecast trajectories in mg/dL, one value every 7.5 minutes starting now."""
    iob: Tuple[int, ...] = ()
    zt: Tuple[int, ...] = ()
    cob: Tuple[int, ...] = ()
    uam: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, List[int]]:
        return {
            "IOB": list(self.iob),
            "ZT": list(self.zt),
            "COB": list(self.cob),
            "UAM": list(self.uam),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Predictions":
        return cls(
            iob=tuple(int(v) for v in data.get("IOB", [])),
            zt=tuple(int(v) for v in data.get("ZT", [])),
            cob=tuple(int(v) for v in data.get("COB", [])),
            uam=tuple(int(v) for v in data.get("UAM", [])),
        )


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Suggestion:
    """
    Outcome of one loop iteration.

    Created once by the prediction step and persisted. The only change allowed
    afterwards is :meth:`stamped`, which records the enactment outcome on a copy.
    """
    reason: str
    timestamp: datetime
    deliver_at: datetime
    bg: float
    eventual_bg: Optional[float] = None
    insulin_req: float = 0.0
    units: Optional[float] = None
    rate: Optional[float] = None
    duration: Optional[float] = None
    temp: str = "absolute"
    iob: Optional[float] = None
    cob: Optional[float] = None
    carbs_req: Optional[float] = None
    sensitivity_ratio: Optional[float] = None
    reservoir: Optional[float] = None
    predictions: Optional[Predictions] = None
    received: Optional[bool] = None
    enacted_at: Optional[datetime] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_temp_basal(self) -> bool:
        return self.rate is not None and self.duration is not None

    @property
    def has_bolus(self) -> bool:
        return self.units is not None and self.units > 0

    @property
    def reason_parts(self) -> List[str]:
        return [part.strip() for part in self.reason.split(";") if part.strip()]

    @property
    def reason_conclusion(self) -> str:
        parts = self.reason_parts
        return parts[-1] if parts else ""

    def is_expired(self, now: datetime, window_minutes: float) -> bool:
        return now - self.deliver_at >= timedelta(minutes=window_minutes)

    def with_temp_basal(self, rate: float, duration: float) -> "Suggestion":
        return replace(self, rate=rate, duration=duration)

    def stamped(self, received: bool, at: datetime) -> "Suggestion":
        return replace(self, received=received, enacted_at=at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "timestamp": _format_time(self.timestamp),
            "deliverAt": _format_time(self.deliver_at),
            "bg": self.bg,
            "eventualBG": self.eventual_bg,
            "insulinReq": self.insulin_req,
            "units": self.units,
            "rate": self.rate,
            "duration": self.duration,
            "temp": self.temp,
            "IOB": self.iob,
            "COB": self.cob,
            "carbsReq": self.carbs_req,
            "sensitivityRatio": self.sensitivity_ratio,
            "reservoir": self.reservoir,
            "predBGs": self.predictions.to_dict() if self.predictions is not None else None,
            "received": self.received,
            "enactedAt": _format_time(self.enacted_at),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Suggestion":
        predictions = data.get("predBGs")
        return cls(
            reason=data["reason"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            deliver_at=datetime.fromisoformat(data["deliverAt"]),
            bg=data["bg"],
            eventual_bg=data.get("eventualBG"),
            insulin_req=data.get("insulinReq", 0.0),
            units=data.get("units"),
            rate=data.get("rate"),
            duration=data.get("duration"),
            temp=data.get("temp", "absolute"),
            iob=data.get("IOB"),
            cob=data.get("COB"),
            carbs_req=data.get("carbsReq"),
            sensitivity_ratio=data.get("sensitivityRatio"),
            reservoir=data.get("reservoir"),
            predictions=Predictions.from_dict(predictions) if predictions is not None else None,
            received=data.get("received"),
            enacted_at=_parse_time(data.get("enactedAt")),
            warnings=tuple(data.get("warnings", [])),
        )

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from aidloop.core.models import CarbEntry, CarbSource, DoseKind, GlucoseSample, InsulinDoseEvent
from aidloop.core.profile import Profile
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.settings import LoopSettings

LATEST_SCHEMA_VERSION = "1.0"
MINUTES_PER_DAY = 24 * 60


class ScheduleEntryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    offset_minutes: int = Field(ge=0, lt=MINUTES_PER_DAY)
    value: float = Field(ge=0.0)


class TargetEntryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    offset_minutes: int = Field(ge=0, lt=MINUTES_PER_DAY)
    low: float = Field(ge=60.0, le=200.0)
    high: float = Field(ge=60.0, le=200.0)

    @model_validator(mode="after")
    def _check_range(self) -> "TargetEntryModel":
        if self.high < self.low:
            raise ValueError("target high must be >= low")
        return self


def _check_schedule(name: str, entries: List[Any]) -> None:
    if not entries:
        raise ValueError(f"{name} must have at least one entry")
    offsets = [entry.offset_minutes for entry in entries]
    if offsets[0] != 0:
        raise ValueError(f"{name} must start at offset 0")
    if offsets != sorted(set(offsets)):
        raise ValueError(f"{name} offsets must be strictly increasing")


class ProfileModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    isf_schedule: List[ScheduleEntryModel]
    carb_ratio_schedule: List[ScheduleEntryModel]
    basal_schedule: List[ScheduleEntryModel]
    target_schedule: List[TargetEntryModel]
    max_basal: float = Field(default=3.0, ge=0.0, le=35.0)
    max_bolus: float = Field(default=10.0, ge=0.0, le=30.0)
    dia_hours: float = Field(default=4.0, ge=2.0, le=10.0)
    min_5m_carb_impact: float = Field(default=8.0, ge=0.0, le=20.0)
    max_cob: float = Field(default=120.0, ge=0.0, le=300.0)
    carb_absorption_hours: float = Field(default=4.0, gt=0.0, le=12.0)

    @model_validator(mode="after")
    def _check_schedules(self) -> "ProfileModel":
        _check_schedule("isf_schedule", self.isf_schedule)
        _check_schedule("carb_ratio_schedule", self.carb_ratio_schedule)
        _check_schedule("basal_schedule", self.basal_schedule)
        _check_schedule("target_schedule", self.target_schedule)
        for name in ("isf_schedule", "carb_ratio_schedule"):
            if any(entry.value <= 0 for entry in getattr(self, name)):
                raise ValueError(f"{name} values must be > 0")
        if any(entry.value > self.max_basal for entry in self.basal_schedule):
            raise ValueError("basal_schedule values must not exceed max_basal")
        return self

    def to_profile(self) -> Profile:
        return Profile(
            isf_schedule=tuple((e.offset_minutes, e.value) for e in self.isf_schedule),
            carb_ratio_schedule=tuple((e.offset_minutes, e.value) for e in self.carb_ratio_schedule),
            basal_schedule=tuple((e.offset_minutes, e.value) for e in self.basal_schedule),
            target_schedule=tuple((e.offset_minutes, e.low, e.high) for e in self.target_schedule),
            max_basal=self.max_basal,
            max_bolus=self.max_bolus,
            dia_hours=self.dia_hours,
            min_5m_carb_impact=self.min_5m_carb_impact,
            max_cob=self.max_cob,
            carb_absorption_hours=self.carb_absorption_hours,
        )


class LoopSettingsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    closed_loop: bool = False
    enable_smb: bool = False
    bolus_increment: float = Field(default=0.1, gt=0.0, le=1.0)
    unsuspend_if_no_temp: bool = False
    skip_neutral_temps: bool = False
    carbs_req_threshold: float = Field(default=1.0, ge=0.0)

    def to_settings(self) -> LoopSettings:
        return LoopSettings(**self.model_dump())


class SafetyConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_glucose: float = Field(default=39.0, ge=0.0)
    max_glucose: float = Field(default=600.0, gt=0.0)
    max_glucose_delta_per_5_min: float = Field(default=35.0, gt=0.0)
    max_glucose_age_minutes: float = Field(default=12.0, gt=0.0, le=60.0)
    flat_window_samples: int = Field(default=4, ge=2)
    low_glucose_floor: float = Field(default=40.0, ge=0.0)
    temp_basal_minutes: int = Field(default=30, gt=0, le=720)
    max_temp_multiplier: float = Field(default=2.0, gt=0.0)
    suggestion_expiration_minutes: float = Field(default=10.0, gt=0.0)
    neutral_temp_minutes: int = Field(default=30, gt=0, le=720)
    min_bolus_units: float = Field(default=0.0, ge=0.0)
    pump_data_timeout_seconds: float = Field(default=60.0, gt=0.0)

    @model_validator(mode="after")
    def _check_glucose_range(self) -> "SafetyConfigModel":
        if self.max_glucose <= self.min_glucose:
            raise ValueError("max_glucose must be greater than min_glucose")
        return self

    def to_config(self) -> SafetyConfig:
        return SafetyConfig(**self.model_dump())


class GlucoseSampleModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: datetime
    value: float = Field(gt=0.0)
    direction: Optional[str] = None
    id: Optional[str] = None

    def to_sample(self) -> GlucoseSample:
        return GlucoseSample(self.timestamp, self.value, self.direction, self.id)


class CarbEntryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: datetime
    grams: float = Field(ge=0.0, le=500.0)
    source: Literal["sensor", "manual", "journal"] = "manual"
    deleted: bool = False
    id: Optional[str] = None

    def to_entry(self) -> CarbEntry:
        return CarbEntry(self.timestamp, self.grams, CarbSource(self.source), self.deleted, self.id)


class DoseEventModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: datetime
    kind: Literal["bolus", "temp_basal_start", "temp_basal_end", "suspend", "resume"]
    amount: float = Field(default=0.0, ge=0.0)
    duration_minutes: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def _check_kind(self) -> "DoseEventModel":
        if self.kind == "bolus" and self.amount <= 0:
            raise ValueError("bolus amount must be > 0 units")
        if self.kind == "temp_basal_start" and self.duration_minutes <= 0:
            raise ValueError("temp_basal_start requires duration_minutes > 0")
        return self

    def to_event(self) -> InsulinDoseEvent:
        return InsulinDoseEvent(self.timestamp, DoseKind(self.kind), self.amount, self.duration_minutes)


class PumpConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    basal_step: float = Field(default=0.05, gt=0.0)
    bolus_step: float = Field(default=0.1, gt=0.0)
    reservoir: Optional[float] = Field(default=200.0, ge=0.0)
    battery_percent: Optional[float] = Field(default=100.0, ge=0.0, le=100.0)
    suspended: bool = False
    bolusing: bool = False


class ScenarioModel(BaseModel):
    """A recorded loop input: history up to ``now`` plus configuration."""
    model_config = ConfigDict(extra="forbid")

    scenario_name: str = Field(min_length=1)
    schema_version: str = Field(default=LATEST_SCHEMA_VERSION, min_length=1)
    description: Optional[str] = None
    now: datetime
    profile: ProfileModel
    settings: LoopSettingsModel = Field(default_factory=LoopSettingsModel)
    safety: SafetyConfigModel = Field(default_factory=SafetyConfigModel)
    pump: PumpConfigModel = Field(default_factory=PumpConfigModel)
    glucose: List[GlucoseSampleModel] = Field(default_factory=list)
    carbs: List[CarbEntryModel] = Field(default_factory=list)
    doses: List[DoseEventModel] = Field(default_factory=list)

    @field_validator("schema_version", mode="before")
    @classmethod
    def _normalize_schema_version(cls, value: Any) -> str:
        if isinstance(value, (int, float)):
            return str(value)
        if value is None:
            return LATEST_SCHEMA_VERSION
        return str(value)

    @model_validator(mode="after")
    def _check_history(self) -> "ScenarioModel":
        for sample in self.glucose:
            if sample.timestamp > self.now:
                raise ValueError(f"glucose reading at {sample.timestamp.isoformat()} is after now")
        return self


class PredictionsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    IOB: List[int] = Field(default_factory=list)
    ZT: List[int] = Field(default_factory=list)
    COB: List[int] = Field(default_factory=list)
    UAM: List[int] = Field(default_factory=list)


class SuggestionRecordModel(BaseModel):
    """On-disk shape of a stored suggestion."""
    model_config = ConfigDict(extra="forbid")

    reason: str
    timestamp: datetime
    deliverAt: datetime
    bg: float
    eventualBG: Optional[float] = None
    insulinReq: float = Field(default=0.0, ge=0.0)
    units: Optional[float] = Field(default=None, ge=0.0)
    rate: Optional[float] = Field(default=None, ge=0.0)
    duration: Optional[float] = Field(default=None, ge=0.0)
    temp: str = "absolute"
    IOB: Optional[float] = None
    COB: Optional[float] = Field(default=None, ge=0.0)
    carbsReq: Optional[float] = None
    sensitivityRatio: Optional[float] = None
    reservoir: Optional[float] = None
    predBGs: Optional[PredictionsModel] = None
    received: Optional[bool] = None
    enactedAt: Optional[datetime] = None
    warnings: List[str] = Field(default_factory=list)


def scenario_summary(model: ScenarioModel) -> Dict[str, Any]:
    return {
        "scenario_name": model.scenario_name,
        "now": model.now.isoformat(),
        "glucose_readings": len(model.glucose),
        "carb_entries": len(model.carbs),
        "dose_events": len(model.doses),
        "closed_loop": model.settings.closed_loop,
    }

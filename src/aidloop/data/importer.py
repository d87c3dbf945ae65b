from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

from aidloop.core.models import CarbEntry, CarbSource, DoseKind, GlucoseSample, InsulinDoseEvent

MIN_GLUCOSE_READING = 39.0


def _normalize_column(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "", name.lower())


def _find_column(columns: Iterable[str], candidates: Iterable[str]) -> Optional[str]:
    normalized = {col: _normalize_column(col) for col in columns}
    candidate_set = {_normalize_column(c) for c in candidates}
    for col, norm in normalized.items():
        if norm in candidate_set:
            return col
    return None


DEFAULT_COLUMNS: Dict[str, List[str]] = {
    "timestamp": ["timestamp", "time", "datetime", "date", "dateString", "device timestamp"],
    "glucose": ["glucose", "bg", "sgv", "sensorglucose", "glucosemgdl", "glucosevalue"],
    "carbs": ["carbs", "carb", "carbohydrates", "carbsg", "carbgrams"],
    "bolus": ["bolus", "insulin", "insulinunits", "bolusunits"],
    "temp_rate": ["temprate", "tempbasal", "absolute", "rate"],
    "temp_duration": ["tempduration", "duration", "durationminutes"],
}


@dataclass
class HistoryImport:
    glucose: List[GlucoseSample] = field(default_factory=list)
    carbs: List[CarbEntry] = field(default_factory=list)
    doses: List[InsulinDoseEvent] = field(default_factory=list)

    @property
    def latest_time(self) -> Optional[datetime]:
        times = [s.timestamp for s in self.glucose]
        return max(times) if times else None


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        timestamp = pd.to_datetime(value, unit="ms", utc=True, errors="coerce")
    else:
        timestamp = pd.to_datetime(value, utc=True, errors="coerce")
    if pd.isna(timestamp):
        return None
    return timestamp.to_pydatetime()


def _positive(value: Any) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    number = float(value)
    return number if number > 0 else None


def history_from_dataframe(
    df: pd.DataFrame,
    column_map: Optional[Dict[str, str]] = None,
    carb_source: CarbSource = CarbSource.MANUAL,
) -> HistoryImport:
    """
    Convert a tabular export (one row per event) into loop history.

    Only ``timestamp`` and ``glucose`` columns are required; carbs, bolus and
    temp basal columns are picked up when present. Readings below 39 mg/dL are
    sensor error codes and are dropped.
    """
    columns = list(df.columns)
    mapping = {k: v for k, v in (column_map or {}).items() if v}

    def resolve(key: str, required: bool = True) -> Optional[str]:
        if key in mapping:
            return mapping[key]
        col = _find_column(columns, DEFAULT_COLUMNS[key])
        if required and col is None:
            raise ValueError(f"Missing required column for '{key}'. Columns: {columns}")
        return col

    ts_col = resolve("timestamp")
    glucose_col = resolve("glucose")
    carbs_col = resolve("carbs", required=False)
    bolus_col = resolve("bolus", required=False)
    rate_col = resolve("temp_rate", required=False)
    duration_col = resolve("temp_duration", required=False)

    frame = df.copy()
    frame["_ts"] = pd.to_datetime(frame[ts_col], utc=True, errors="coerce")
    frame = frame.dropna(subset=["_ts"]).sort_values("_ts")

    result = HistoryImport()
    for _, row in frame.iterrows():
        timestamp = row["_ts"].to_pydatetime()
        glucose = row[glucose_col]
        if glucose is not None and not pd.isna(glucose) and float(glucose) >= MIN_GLUCOSE_READING:
            result.glucose.append(GlucoseSample(timestamp, float(glucose)))
        grams = _positive(row[carbs_col]) if carbs_col else None
        if grams is not None:
            result.carbs.append(CarbEntry(timestamp, grams, source=carb_source))
        units = _positive(row[bolus_col]) if bolus_col else None
        if units is not None:
            result.doses.append(InsulinDoseEvent(timestamp, DoseKind.BOLUS, amount=units))
        if rate_col and duration_col and not pd.isna(row[rate_col]):
            duration = _positive(row[duration_col])
            if duration is not None:
                result.doses.append(
                    InsulinDoseEvent(
                        timestamp, DoseKind.TEMP_BASAL_START,
                        amount=max(0.0, float(row[rate_col])), duration_minutes=duration,
                    )
                )
    return result


def import_history_csv(
    path: Union[str, Path],
    column_map: Optional[Dict[str, str]] = None,
    carb_source: CarbSource = CarbSource.MANUAL,
) -> HistoryImport:
    df = pd.read_csv(path)
    return history_from_dataframe(df, column_map=column_map, carb_source=carb_source)


def _entry_get(entry: Any, key: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(key)
    return getattr(entry, key, None)


def entries_to_dataframe(entries: Iterable[Any]) -> pd.DataFrame:
    """Nightscout ``entries`` (sgv records) to a timestamp/glucose frame."""
    rows: List[Dict[str, Any]] = []
    for entry in entries:
        glucose = _entry_get(entry, "sgv") or _entry_get(entry, "glucose")
        if glucose is None:
            continue
        timestamp = _to_datetime(
            _entry_get(entry, "date")
            or _entry_get(entry, "dateString")
            or _entry_get(entry, "timestamp")
        )
        if timestamp is None:
            continue
        rows.append(
            {
                "timestamp": timestamp,
                "glucose": float(glucose),
                "direction": _entry_get(entry, "direction"),
                "id": _entry_get(entry, "_id"),
            }
        )
    return pd.DataFrame(rows, columns=["timestamp", "glucose", "direction", "id"])


def glucose_from_entries(entries: Iterable[Any]) -> List[GlucoseSample]:
    df = entries_to_dataframe(entries)
    if df.empty:
        return []
    df = df[df["glucose"] >= MIN_GLUCOSE_READING].drop_duplicates(subset=["timestamp"])
    df = df.sort_values("timestamp")
    samples: List[GlucoseSample] = []
    for row in df.itertuples(index=False):
        direction = row.direction if isinstance(row.direction, str) else None
        sample_id = row.id if isinstance(row.id, str) else None
        timestamp = pd.Timestamp(row.timestamp).to_pydatetime()
        samples.append(GlucoseSample(timestamp, float(row.glucose), direction, sample_id))
    return samples


def history_from_treatments(treatments: Iterable[Any]) -> HistoryImport:
    """Nightscout ``treatments`` to carb entries and dose events."""
    result = HistoryImport()
    for treatment in treatments:
        timestamp = _to_datetime(
            _entry_get(treatment, "created_at")
            or _entry_get(treatment, "timestamp")
            or _entry_get(treatment, "date")
        )
        if timestamp is None:
            continue
        event_type = (_entry_get(treatment, "eventType") or "").lower()
        grams = _positive(_entry_get(treatment, "carbs"))
        if grams is not None:
            result.carbs.append(CarbEntry(timestamp, grams, id=_entry_get(treatment, "_id")))
        units = _positive(_entry_get(treatment, "insulin"))
        if units is not None:
            result.doses.append(InsulinDoseEvent(timestamp, DoseKind.BOLUS, amount=units))
        if event_type == "temp basal":
            rate = _entry_get(treatment, "absolute")
            if rate is None:
                rate = _entry_get(treatment, "rate")
            duration = _positive(_entry_get(treatment, "duration"))
            if rate is not None and duration is not None:
                result.doses.append(
                    InsulinDoseEvent(
                        timestamp, DoseKind.TEMP_BASAL_START,
                        amount=max(0.0, float(rate)), duration_minutes=duration,
                    )
                )
        elif event_type == "suspend pump":
            result.doses.append(InsulinDoseEvent(timestamp, DoseKind.SUSPEND))
        elif event_type == "resume pump":
            result.doses.append(InsulinDoseEvent(timestamp, DoseKind.RESUME))
    result.carbs.sort(key=lambda e: e.timestamp)
    result.doses.sort(key=lambda e: e.timestamp)
    return result


def load_nightscout_export(
    entries_path: Union[str, Path],
    treatments_path: Optional[Union[str, Path]] = None,
) -> HistoryImport:
    """Load ``entries.json`` (and optionally ``treatments.json``) downloaded from Nightscout."""
    entries = json.loads(Path(entries_path).read_text())
    result = HistoryImport(glucose=glucose_from_entries(entries))
    if treatments_path is not None:
        treatments = history_from_treatments(json.loads(Path(treatments_path).read_text()))
        result.carbs = treatments.carbs
        result.doses = treatments.doses
    return result

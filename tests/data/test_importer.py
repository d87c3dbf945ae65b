import json

import pandas as pd
import pytest

from aidloop.core.models import CarbSource, DoseKind
from aidloop.data.importer import (
    glucose_from_entries,
    history_from_dataframe,
    history_from_treatments,
    import_history_csv,
    load_nightscout_export,
)


def test_import_history_csv_detects_columns(tmp_path):
    path = tmp_path / "export.csv"
    path.write_text(
        "Timestamp,Glucose (mg/dL),Carbs,Bolus\n"
        "2024-05-01T11:50:00Z,110,,\n"
        "2024-05-01T11:55:00Z,30,45,\n"
        "2024-05-01T12:00:00Z,118,,2.5\n"
    )

    history = import_history_csv(path)

    assert [s.value for s in history.glucose] == [110.0, 118.0]
    assert [e.grams for e in history.carbs] == [45.0]
    assert history.carbs[0].source == CarbSource.MANUAL
    assert [(d.kind, d.amount) for d in history.doses] == [(DoseKind.BOLUS, 2.5)]
    assert history.latest_time.hour == 12


def test_history_from_dataframe_with_column_map_and_temps():
    df = pd.DataFrame(
        {
            "when": ["2024-05-01T11:00:00Z", "2024-05-01T11:30:00Z"],
            "cgm": [140.0, 150.0],
            "temp_rate": [0.0, None],
            "temp_duration": [30, None],
        }
    )

    history = history_from_dataframe(df, column_map={"timestamp": "when", "glucose": "cgm"}, carb_source=CarbSource.JOURNAL)

    assert len(history.glucose) == 2
    assert len(history.doses) == 1
    assert history.doses[0].kind == DoseKind.TEMP_BASAL_START
    assert history.doses[0].duration_minutes == 30


def test_history_from_dataframe_requires_glucose():
    df = pd.DataFrame({"timestamp": ["2024-05-01T11:00:00Z"], "carbs": [10]})

    with pytest.raises(ValueError, match="glucose"):
        history_from_dataframe(df)


def test_glucose_from_nightscout_entries():
    entries = [
        {"sgv": 120, "date": 1714564800000, "direction": "Flat", "_id": "e2"},
        {"sgv": 115, "date": 1714564500000, "direction": "FortyFiveUp", "_id": "e1"},
        {"sgv": 20, "date": 1714564200000},
        {"type": "mbg", "mbg": 130, "date": 1714564100000},
    ]

    samples = glucose_from_entries(entries)

    assert [s.value for s in samples] == [115.0, 120.0]
    assert samples[0].id == "e1"
    assert samples[1].direction == "Flat"
    assert samples[0].timestamp.tzinfo is not None


def test_history_from_nightscout_treatments():
    treatments = [
        {"eventType": "Meal Bolus", "created_at": "2024-05-01T11:00:00Z", "carbs": 40, "insulin": 3.0, "_id": "t1"},
        {"eventType": "Temp Basal", "created_at": "2024-05-01T11:30:00Z", "absolute": 0.0, "duration": 30},
        {"eventType": "Suspend Pump", "created_at": "2024-05-01T11:45:00Z"},
        {"eventType": "Resume Pump", "created_at": "2024-05-01T11:50:00Z"},
        {"eventType": "Note", "created_at": "2024-05-01T11:55:00Z", "notes": "walk"},
    ]

    history = history_from_treatments(treatments)

    assert [(e.grams, e.id) for e in history.carbs] == [(40.0, "t1")]
    assert [d.kind for d in history.doses] == [
        DoseKind.BOLUS,
        DoseKind.TEMP_BASAL_START,
        DoseKind.SUSPEND,
        DoseKind.RESUME,
    ]
    assert history.doses[1].amount == 0.0


def test_load_nightscout_export(tmp_path):
    entries_path = tmp_path / "entries.json"
    treatments_path = tmp_path / "treatments.json"
    entries_path.write_text(json.dumps([{"sgv": 101, "dateString": "2024-05-01T12:00:00Z"}]))
    treatments_path.write_text(json.dumps([{"eventType": "Carb Correction", "created_at": "2024-05-01T11:58:00Z", "carbs": 15}]))

    history = load_nightscout_export(entries_path, treatments_path)

    assert [s.value for s in history.glucose] == [101.0]
    assert [e.grams for e in history.carbs] == [15.0]
    assert history.doses == []

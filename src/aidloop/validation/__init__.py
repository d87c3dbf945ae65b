from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from aidloop.core.models import Suggestion
from aidloop.core.profile import Profile
from aidloop.core.settings import LoopSettings
from aidloop.validation.schemas import (
    LoopSettingsModel,
    ProfileModel,
    SafetyConfigModel,
    ScenarioModel,
    SuggestionRecordModel,
    scenario_summary,
)


def _read_document(path: Path) -> Any:
    text = path.read_text()
    if path.suffix.lower() == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def validate_profile_dict(data: Dict[str, Any]) -> ProfileModel:
    return ProfileModel.model_validate(data)


def load_profile(path: Union[str, Path]) -> Profile:
    data = _read_document(Path(path))
    return validate_profile_dict(data).to_profile()


def validate_loop_settings_dict(data: Dict[str, Any]) -> LoopSettings:
    return LoopSettingsModel.model_validate(data).to_settings()


def validate_scenario_dict(data: Dict[str, Any]) -> ScenarioModel:
    return ScenarioModel.model_validate(data)


def load_scenario(path: Union[str, Path]) -> ScenarioModel:
    data = _read_document(Path(path))
    return validate_scenario_dict(data)


def validate_suggestion_dict(data: Dict[str, Any]) -> Suggestion:
    SuggestionRecordModel.model_validate(data)
    return Suggestion.from_dict(data)


def scenario_warnings(model: ScenarioModel) -> List[str]:
    warnings: List[str] = []
    for idx, entry in enumerate(model.carbs):
        if entry.grams > 200:
            warnings.append(f"carbs[{idx}]: {entry.grams}g is unusually high")
    for idx, event in enumerate(model.doses):
        if event.kind == "bolus" and event.amount > model.profile.max_bolus:
            warnings.append(f"doses[{idx}]: bolus {event.amount}U exceeds max_bolus {model.profile.max_bolus}U")
        if event.kind == "temp_basal_start" and event.amount > model.profile.max_basal:
            warnings.append(f"doses[{idx}]: temp {event.amount}U/h exceeds max_basal {model.profile.max_basal}U/h")
    if model.glucose:
        newest = max(sample.timestamp for sample in model.glucose)
        age = (model.now - newest).total_seconds() / 60.0
        if age >= model.safety.max_glucose_age_minutes:
            warnings.append(f"latest glucose is {age:.0f} min old; the loop will refuse to run")
    else:
        warnings.append("no glucose readings; the loop will refuse to run")
    return warnings


def format_validation_error(error: ValidationError) -> List[str]:
    lines: List[str] = []
    for entry in error.errors():
        loc = ".".join(str(item) for item in entry.get("loc", []))
        msg = entry.get("msg", "Invalid value")
        lines.append(f"{loc}: {msg}")
    return lines


__all__ = [
    "LoopSettingsModel",
    "ProfileModel",
    "SafetyConfigModel",
    "ScenarioModel",
    "SuggestionRecordModel",
    "format_validation_error",
    "load_profile",
    "load_scenario",
    "scenario_summary",
    "scenario_warnings",
    "validate_loop_settings_dict",
    "validate_profile_dict",
    "validate_scenario_dict",
    "validate_suggestion_dict",
]

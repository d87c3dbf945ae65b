from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from aidloop.core.models import CarbEntry, GlucoseSample, InsulinDoseEvent, Suggestion
from aidloop.core.profile import Profile
from aidloop.core.safety.input_validator import is_flat
from aidloop.core.settings import LoopSettings

logger = logging.getLogger("aidloop.data")

LOOP_SETTINGS_KEY = "preferences"


# ----------------------------------------------------------------------
# Collaborator interfaces
# ----------------------------------------------------------------------

class GlucoseStore(ABC):
    @abstractmethod
    def recent(self, since: datetime) -> List[GlucoseSample]:
        """Readings at or after ``since``, newest first."""

    @abstractmethod
    def all(self) -> List[GlucoseSample]:
        ...

    def is_flat(self, window: int = 4) -> bool:
        return is_flat(self.all(), window)


class CarbStore(ABC):
    @abstractmethod
    def recent(self, since: datetime) -> List[CarbEntry]:
        ...


class PumpHistoryStore(ABC):
    @abstractmethod
    def recent(self, since: datetime) -> List[InsulinDoseEvent]:
        ...


class ProfileStore(ABC):
    @abstractmethod
    def current(self) -> Profile:
        ...


class SuggestionStore(ABC):
    @abstractmethod
    def save(self, suggestion: Suggestion, enacted: bool = False) -> None:
        ...

    @abstractmethod
    def latest(self, enacted: bool = False) -> Optional[Suggestion]:
        ...


class SettingsStore(ABC):
    """Named settings blobs."""

    @abstractmethod
    def read(self, name: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def write(self, name: str, blob: Dict[str, Any]) -> None:
        ...

    def load_loop_settings(self) -> LoopSettings:
        blob = self.read(LOOP_SETTINGS_KEY)
        return LoopSettings.from_dict(blob) if blob else LoopSettings()

    def save_loop_settings(self, settings: LoopSettings) -> None:
        self.write(LOOP_SETTINGS_KEY, settings.to_dict())


# ----------------------------------------------------------------------
# In-memory implementations
# ----------------------------------------------------------------------

class InMemoryGlucoseStore(GlucoseStore):
    def __init__(self, samples: Iterable[GlucoseSample] = ()):
        self._samples: List[GlucoseSample] = []
        self.add(samples)

    def add(self, samples: Iterable[GlucoseSample]) -> int:
        """Append readings, dropping duplicates by id or timestamp. Returns the number stored."""
        seen_ids = {s.id for s in self._samples if s.id is not None}
        seen_times = {s.timestamp for s in self._samples}
        added = 0
        for sample in samples:
            if (sample.id is not None and sample.id in seen_ids) or sample.timestamp in seen_times:
                continue
            self._samples.append(sample)
            seen_times.add(sample.timestamp)
            if sample.id is not None:
                seen_ids.add(sample.id)
            added += 1
        self._samples.sort(key=lambda s: s.timestamp)
        return added

    def all(self) -> List[GlucoseSample]:
        return list(reversed(self._samples))

    def recent(self, since: datetime) -> List[GlucoseSample]:
        return [s for s in reversed(self._samples) if s.timestamp >= since]


class InMemoryCarbStore(CarbStore):
    def __init__(self, entries: Iterable[CarbEntry] = ()):
        self.entries: List[CarbEntry] = list(entries)

    def add(self, entry: CarbEntry) -> None:
        self.entries.append(entry)

    def recent(self, since: datetime) -> List[CarbEntry]:
        return sorted(
            (e for e in self.entries if e.timestamp >= since and not e.deleted),
            key=lambda e: e.timestamp,
            reverse=True,
        )


class InMemoryPumpHistoryStore(PumpHistoryStore):
    def __init__(self, events: Iterable[InsulinDoseEvent] = ()):
        self.events: List[InsulinDoseEvent] = list(events)

    def add(self, event: InsulinDoseEvent) -> None:
        self.events.append(event)

    def recent(self, since: datetime) -> List[InsulinDoseEvent]:
        return sorted((e for e in self.events if e.timestamp >= since), key=lambda e: e.timestamp)


class StaticProfileStore(ProfileStore):
    def __init__(self, profile: Optional[Profile] = None):
        self.profile = profile or Profile()

    def current(self) -> Profile:
        return self.profile


class InMemorySuggestionStore(SuggestionStore):
    def __init__(self) -> None:
        self.saved: List[Suggestion] = []
        self.enacted: List[Suggestion] = []

    def save(self, suggestion: Suggestion, enacted: bool = False) -> None:
        (self.enacted if enacted else self.saved).append(suggestion)

    def latest(self, enacted: bool = False) -> Optional[Suggestion]:
        records = self.enacted if enacted else self.saved
        return records[-1] if records else None


class InMemorySettingsStore(SettingsStore):
    def __init__(self, blobs: Optional[Dict[str, Dict[str, Any]]] = None):
        self._blobs: Dict[str, Dict[str, Any]] = dict(blobs or {})

    def read(self, name: str) -> Optional[Dict[str, Any]]:
        blob = self._blobs.get(name)
        return dict(blob) if blob is not None else None

    def write(self, name: str, blob: Dict[str, Any]) -> None:
        self._blobs[name] = dict(blob)


# ----------------------------------------------------------------------
# JSON file implementations
# ----------------------------------------------------------------------

def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True))


def read_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    return json.loads(path.read_text())


class JsonSuggestionStore(SuggestionStore):
    """Keeps ``suggested.json`` and ``enacted.json`` in a directory."""

    SUGGESTED_FILE = "suggested.json"
    ENACTED_FILE = "enacted.json"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, enacted: bool) -> Path:
        return self.directory / (self.ENACTED_FILE if enacted else self.SUGGESTED_FILE)

    def save(self, suggestion: Suggestion, enacted: bool = False) -> None:
        write_json(self._path(enacted), suggestion.to_dict())

    def latest(self, enacted: bool = False) -> Optional[Suggestion]:
        from aidloop.validation import validate_suggestion_dict

        data = read_json(self._path(enacted))
        if data is None:
            return None
        return validate_suggestion_dict(data)


class JsonSettingsStore(SettingsStore):
    """One ``<name>.json`` file per settings blob."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def read(self, name: str) -> Optional[Dict[str, Any]]:
        return read_json(self.directory / f"{name}.json")

    def write(self, name: str, blob: Dict[str, Any]) -> None:
        write_json(self.directory / f"{name}.json", blob)
        logger.debug("Settings blob '%s' written to %s", name, self.directory)

    def load_loop_settings(self) -> LoopSettings:
        from aidloop.validation import validate_loop_settings_dict

        blob = self.read(LOOP_SETTINGS_KEY)
        return validate_loop_settings_dict(blob) if blob else LoopSettings()

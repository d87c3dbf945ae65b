# src/aidloop/__init__.py

__version__ = "0.1.0"

# Decision pipeline
from .core.algorithms import (
    BasalDeterminator,
    CarbAbsorptionAggregator,
    DeviationStats,
    MealResult,
    PredictionEngine,
    PredictionResult,
)
from .core.iob import InsulinOnBoardCalculator, InsulinState
from .core.models import (
    CarbEntry,
    CarbSource,
    DoseKind,
    GlucoseSample,
    InsulinDoseEvent,
    Predictions,
    PumpStatus,
    Suggestion,
    TempBasal,
)
from .core.profile import Profile, ProfileSnapshot
from .core.settings import LoopSettings
from .core.errors import (
    AlgorithmFault,
    DataFault,
    ExpiredSuggestion,
    InvalidPumpState,
    LoopError,
    PumpError,
    PumpFault,
    StaleOrInsufficientData,
)

# Safety and devices
from .core.safety import DoseSafetyGovernor, GlucoseInputValidator, SafetyConfig
from .core.devices import PumpAdapter, SimulatedPump

# Orchestration
from .core.loop import LoopController, LoopObserver, LoopPhase, LoopState

# Persistence and import
from .data import (
    InMemoryCarbStore,
    InMemoryGlucoseStore,
    InMemoryPumpHistoryStore,
    InMemorySettingsStore,
    InMemorySuggestionStore,
    JsonSettingsStore,
    JsonSuggestionStore,
    StaticProfileStore,
    import_history_csv,
    load_nightscout_export,
)
from .validation import load_profile, load_scenario

__all__ = [
    "__version__",
    "AlgorithmFault",
    "BasalDeterminator",
    "CarbAbsorptionAggregator",
    "CarbEntry",
    "CarbSource",
    "DataFault",
    "DeviationStats",
    "DoseKind",
    "DoseSafetyGovernor",
    "ExpiredSuggestion",
    "GlucoseInputValidator",
    "GlucoseSample",
    "InMemoryCarbStore",
    "InMemoryGlucoseStore",
    "InMemoryPumpHistoryStore",
    "InMemorySettingsStore",
    "InMemorySuggestionStore",
    "InsulinDoseEvent",
    "InsulinOnBoardCalculator",
    "InsulinState",
    "InvalidPumpState",
    "JsonSettingsStore",
    "JsonSuggestionStore",
    "LoopController",
    "LoopError",
    "LoopObserver",
    "LoopPhase",
    "LoopSettings",
    "LoopState",
    "MealResult",
    "PredictionEngine",
    "PredictionResult",
    "Predictions",
    "Profile",
    "ProfileSnapshot",
    "PumpAdapter",
    "PumpError",
    "PumpFault",
    "PumpStatus",
    "SafetyConfig",
    "SimulatedPump",
    "StaleOrInsufficientData",
    "StaticProfileStore",
    "Suggestion",
    "TempBasal",
    "import_history_csv",
    "load_nightscout_export",
    "load_profile",
    "load_scenario",
]

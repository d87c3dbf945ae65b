from .importer import (
    HistoryImport,
    history_from_dataframe,
    history_from_treatments,
    import_history_csv,
    glucose_from_entries,
    load_nightscout_export,
)
from .stores import (
    CarbStore,
    GlucoseStore,
    InMemoryCarbStore,
    InMemoryGlucoseStore,
    InMemoryPumpHistoryStore,
    InMemorySettingsStore,
    InMemorySuggestionStore,
    JsonSettingsStore,
    JsonSuggestionStore,
    ProfileStore,
    PumpHistoryStore,
    SettingsStore,
    StaticProfileStore,
    SuggestionStore,
)

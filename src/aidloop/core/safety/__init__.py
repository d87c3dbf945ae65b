from .config import SafetyConfig
from .input_validator import GlucoseInputValidator, is_flat
from .governor import (
    AuthorizedCommand,
    DoseCommand,
    DoseSafetyGovernor,
    ProfileLimits,
    Rejected,
)

__all__ = [
    "SafetyConfig",
    "GlucoseInputValidator",
    "is_flat",
    "AuthorizedCommand",
    "DoseCommand",
    "DoseSafetyGovernor",
    "ProfileLimits",
    "Rejected",
]

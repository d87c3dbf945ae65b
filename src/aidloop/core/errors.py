from __future__ import annotations

from datetime import datetime
from typing import Optional


class LoopError(RuntimeError):
    """Base class for every failure recorded as ``LoopState.last_error``."""


class DataFault(LoopError):
    """Raised when glucose input cannot support a dosing decision."""

    STALE = "stale"
    FLAT = "flat"
    MISSING = "missing"
    IMPLAUSIBLE = "implausible"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Glucose data fault: {reason}")
        self.reason = reason


class AlgorithmFault(LoopError):
    """
    Numerical edge case inside the algorithm (missing or non-positive profile value).

    Always recovered where it is raised by substituting ``default``.
    """

    def __init__(self, message: str, field: str, default: float):
        super().__init__(message)
        self.field = field
        self.default = default


class PumpFault(LoopError):
    """Base class for failures that abort enactment."""


class PumpError(PumpFault):
    """Communication with the pump failed. The driver exception is chained as ``__cause__``."""


class InvalidPumpState(PumpFault):
    """The pump is missing, suspended, bolusing or out of insulin."""


class StaleOrInsufficientData(PumpFault):
    """The pump could not confirm the data needed to act on a suggestion."""


class ExpiredSuggestion(LoopError):
    """Raised when a suggestion is older than the enactment window."""

    def __init__(self, deliver_at: datetime, now: datetime, window_minutes: float):
        age_minutes = (now - deliver_at).total_seconds() / 60.0
        super().__init__(
            f"Suggestion expired: delivered at {deliver_at.isoformat()}, "
            f"{age_minutes:.1f} min old (window {window_minutes:.0f} min)"
        )
        self.deliver_at = deliver_at
        self.now = now
        self.window_minutes = window_minutes

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from aidloop.core.devices.pump import PumpAdapter
from aidloop.core.errors import InvalidPumpState, PumpError, PumpFault, StaleOrInsufficientData
from aidloop.core.models import PumpStatus, Suggestion
from aidloop.core.profile import Profile
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.settings import LoopSettings

logger = logging.getLogger("aidloop.safety")

BOLUS_PROBE_VOLUMES = (0.05, 0.1)


@dataclass(frozen=True)
class DoseCommand:
    """Raw recommendation before limits and pump rounding."""
    rate: Optional[float] = None  # U/h
    duration: Optional[float] = None  # minutes
    units: Optional[float] = None

    @classmethod
    def from_suggestion(cls, suggestion: Suggestion) -> "DoseCommand":
        return cls(rate=suggestion.rate, duration=suggestion.duration, units=suggestion.units)


@dataclass(frozen=True)
class ProfileLimits:
    max_basal: float
    max_bolus: float

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileLimits":
        return cls(max_basal=profile.max_basal, max_bolus=profile.max_bolus)


@dataclass(frozen=True)
class AuthorizedCommand:
    """Clamped, pump-rounded command. ``None`` fields mean nothing is sent for that part."""
    rate: Optional[float] = None
    duration: Optional[float] = None
    units: Optional[float] = None
    actions_taken: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.rate is None and self.units is None

    @property
    def reason(self) -> str:
        return "APPROVED" if not self.actions_taken else "; ".join(self.actions_taken)


@dataclass(frozen=True)
class Rejected:
    error: PumpFault

    @property
    def reason(self) -> str:
        return str(self.error)


AuthorizationResult = Union[AuthorizedCommand, Rejected]


class DoseSafetyGovernor:
    """
    Hard envelope between a recommendation and the pump.

    Rejects outright when the pump cannot safely take a command, otherwise clamps
    the rate to ``[0, max_basal]`` and the bolus to ``max_bolus`` after pump
    rounding. Pump failures are wrapped into the ``PumpFault`` taxonomy and never
    retried here.
    """

    def __init__(self,
                 settings_store=None,
                 min_bolus_units: float = 0.0,
                 neutral_temp_minutes: int = 30,
                 safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            min_bolus_units = safety_config.min_bolus_units
            neutral_temp_minutes = safety_config.neutral_temp_minutes

        self.settings_store = settings_store
        self.min_bolus_units = min_bolus_units
        self.neutral_temp_minutes = neutral_temp_minutes
        self.decisions: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @staticmethod
    def verify_status(pump: Optional[PumpAdapter], status: Optional[PumpStatus]) -> Optional[Rejected]:
        if pump is None or status is None:
            return Rejected(InvalidPumpState("Pump not set"))
        if status.bolusing:
            return Rejected(InvalidPumpState("Pump is bolusing"))
        if status.suspended:
            return Rejected(InvalidPumpState("Pump suspended"))
        if status.reservoir is not None and status.reservoir <= 0:
            return Rejected(InvalidPumpState("Reservoir is empty"))
        return None

    def round_bolus(self, units: float, pump: PumpAdapter, max_bolus: float) -> float:
        rounded = pump.round_bolus(units)
        return min(rounded, pump.round_bolus(max_bolus))

    def authorize(
        self,
        command: DoseCommand,
        pump_status: Optional[PumpStatus],
        limits: ProfileLimits,
        pump: Optional[PumpAdapter],
    ) -> AuthorizationResult:
        rejection = self.verify_status(pump, pump_status)
        if rejection is not None:
            logger.warning("Command rejected: %s", rejection.reason)
            self._record(command, rejection.reason)
            return rejection

        actions_taken: List[str] = []
        rate = None
        duration = None
        if command.rate is not None and command.duration is not None:
            clamped = min(max(command.rate, 0.0), limits.max_basal)
            if clamped != command.rate:
                actions_taken.append(
                    f"RATE_LIMIT: {command.rate:.2f}U/h clamped to {clamped:.2f}U/h"
                )
            rate = pump.round_basal(clamped)
            duration = max(0.0, command.duration)

        units = None
        if command.units is not None and command.units > 0:
            rounded = pump.round_bolus(command.units)
            capped = self.round_bolus(command.units, pump, limits.max_bolus)
            if capped < rounded:
                actions_taken.append(
                    f"LIMIT: Bolus {rounded:.2f}U capped at {capped:.2f}U"
                )
            if capped <= self.min_bolus_units:
                actions_taken.append(
                    f"NO_BOLUS: {command.units:.3f}U rounds to {capped:.2f}U"
                )
            else:
                units = capped

        if units is not None and pump_status.reservoir is not None and units > pump_status.reservoir:
            rejection = Rejected(StaleOrInsufficientData(
                f"Reservoir {pump_status.reservoir:.2f}U cannot cover bolus {units:.2f}U"
            ))
            logger.warning("Command rejected: %s", rejection.reason)
            self._record(command, rejection.reason)
            return rejection

        authorized = AuthorizedCommand(
            rate=rate, duration=duration, units=units, actions_taken=tuple(actions_taken)
        )
        self._record(command, authorized.reason)
        return authorized

    def _record(self, command: DoseCommand, reason: str) -> None:
        self.decisions.append(
            {
                "requested_rate": command.rate,
                "requested_duration": command.duration,
                "requested_units": command.units,
                "reason": reason,
            }
        )

    # ------------------------------------------------------------------
    # Enactment
    # ------------------------------------------------------------------

    def with_neutral_temp(
        self,
        suggestion: Suggestion,
        pump: PumpAdapter,
        profile: Profile,
        now: datetime,
        settings: LoopSettings,
    ) -> Suggestion:
        """Add a neutral temp at the scheduled basal when nothing else keeps a temp running."""
        if suggestion.has_temp_basal or settings.skip_neutral_temps:
            return suggestion
        if pump.current_temp(now) is not None:
            return suggestion
        basal = profile.resolve(now).basal_rate
        logger.info("No temp required, refreshing neutral temp %.2f U/h", basal)
        return suggestion.with_temp_basal(basal, float(self.neutral_temp_minutes))

    async def enact(self, command: AuthorizedCommand, pump: PumpAdapter) -> None:
        """Send an authorized command: temp basal first, then the bolus."""
        try:
            if command.rate is not None and command.duration is not None:
                await pump.enact_temp_basal(command.rate, command.duration)
            if command.units is not None:
                await pump.enact_bolus(command.units, automatic=True)
        except PumpFault:
            raise
        except Exception as exc:
            raise PumpError(f"Pump command failed: {exc}") from exc

        if command.units is not None:
            self.adjust_bolus_increment(pump)

    async def enact_suggestion(
        self,
        suggestion: Suggestion,
        pump: Optional[PumpAdapter],
        profile: Profile,
        now: datetime,
        settings: LoopSettings,
    ) -> Suggestion:
        """
        Authorize and send one suggestion.

        Returns the suggestion as delivered (neutral temp and rounding applied).

        Raises:
            PumpFault: If the pump state rejects the command or the pump fails.
        """
        status = pump.status() if pump is not None else None
        rejection = self.verify_status(pump, status)
        if rejection is not None:
            self._record(DoseCommand.from_suggestion(suggestion), rejection.reason)
            raise rejection.error

        suggestion = self.with_neutral_temp(suggestion, pump, profile, now, settings)
        result = self.authorize(
            DoseCommand.from_suggestion(suggestion), status, ProfileLimits.from_profile(profile), pump
        )
        if isinstance(result, Rejected):
            raise result.error
        if not result.is_empty:
            await self.enact(result, pump)
        return replace(
            suggestion,
            rate=result.rate if result.rate is not None else suggestion.rate,
            units=result.units,
        )

    # ------------------------------------------------------------------
    # Bolus increment convergence
    # ------------------------------------------------------------------

    @staticmethod
    def detect_bolus_increment(pump: PumpAdapter) -> Optional[float]:
        """Infer the pump's bolus step from how it rounds small test volumes."""
        for volume in BOLUS_PROBE_VOLUMES:
            if math.isclose(pump.round_bolus(volume), volume, abs_tol=1e-9):
                return volume
        return None

    def adjust_bolus_increment(self, pump: PumpAdapter) -> Optional[float]:
        if self.settings_store is None:
            return None
        detected = self.detect_bolus_increment(pump)
        if detected is None:
            return None
        settings = self.settings_store.load_loop_settings()
        if not math.isclose(settings.bolus_increment, detected):
            logger.info(
                "Bolus increment %.3f U does not match pump (%.3f U), updating preference",
                settings.bolus_increment, detected,
            )
            settings.bolus_increment = detected
            self.settings_store.save_loop_settings(settings)
        return detected

    def get_safety_report(self) -> Dict[str, Any]:
        rejected = sum(1 for d in self.decisions if d["reason"] != "APPROVED")
        return {
            "total_decisions": len(self.decisions),
            "modified_or_rejected": rejected,
            "recent_decisions": self.decisions[-5:],
        }

    def reset(self) -> None:
        self.decisions = []

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, List, Optional

from aidloop.core.algorithms.carb_absorption import CarbAbsorptionAggregator
from aidloop.core.algorithms.determine_basal import BasalDeterminator
from aidloop.core.devices.pump import PumpAdapter
from aidloop.core.errors import ExpiredSuggestion, InvalidPumpState, LoopError, PumpError, PumpFault
from aidloop.core.iob import InsulinOnBoardCalculator
from aidloop.core.models import Suggestion
from aidloop.core.profile import Profile
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.safety.governor import DoseCommand, DoseSafetyGovernor, ProfileLimits, Rejected
from aidloop.core.safety.input_validator import GlucoseInputValidator
from aidloop.core.settings import LoopSettings
from aidloop.data.stores import (
    CarbStore,
    GlucoseStore,
    ProfileStore,
    PumpHistoryStore,
    SettingsStore,
    SuggestionStore,
)

logger = logging.getLogger("aidloop.loop")

GLUCOSE_LOOKBACK = timedelta(hours=6, minutes=45)
CARB_LOOKBACK = timedelta(hours=6)


class LoopPhase(str, Enum):
    IDLE = "idle"
    PREDICTING = "predicting"
    OPEN_LOOP_DONE = "open_loop_done"
    ENACTING = "enacting"
    ERROR = "error"


@dataclass
class LoopState:
    """
    Owned, single-instance loop context.

    Read freely; only :class:`LoopController` mutates it.
    """
    is_looping: bool = False
    phase: LoopPhase = LoopPhase.IDLE
    last_loop_timestamp: Optional[datetime] = None
    last_error: Optional[LoopError] = None
    completed_attempts: int = 0


class LoopObserver:
    """Override the callbacks of interest; all default to no-ops."""

    def suggestion_did_update(self, suggestion: Suggestion) -> None:
        pass

    def enacted_suggestion_did_update(self, suggestion: Suggestion) -> None:
        pass

    def loop_did_fail(self, error: LoopError) -> None:
        pass


class LoopController:
    """
    Orchestrates one dosing decision per trigger.

    Idle -> Predicting -> (OpenLoopDone | Enacting) -> Idle, with an Error exit
    from any in-flight phase. A trigger that arrives while an attempt is in
    flight is dropped. Everything runs on one asyncio event loop; the
    ``is_looping`` flag is checked and set before the first await.
    """

    def __init__(
        self,
        state: LoopState,
        glucose_store: GlucoseStore,
        carb_store: CarbStore,
        pump_history: PumpHistoryStore,
        profile_store: ProfileStore,
        suggestion_store: SuggestionStore,
        settings_store: SettingsStore,
        pump: Optional[PumpAdapter] = None,
        safety_config: Optional[SafetyConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.state = state
        self.glucose_store = glucose_store
        self.carb_store = carb_store
        self.pump_history = pump_history
        self.profile_store = profile_store
        self.suggestion_store = suggestion_store
        self.settings_store = settings_store
        self.pump = pump
        self.safety_config = safety_config or SafetyConfig()
        self.validator = GlucoseInputValidator(safety_config=self.safety_config)
        self.aggregator = CarbAbsorptionAggregator()
        self.determinator = BasalDeterminator(safety_config=self.safety_config)
        self.governor = DoseSafetyGovernor(settings_store=settings_store, safety_config=self.safety_config)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._observers: List[LoopObserver] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: LoopObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: LoopObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, callback: str, payload: Any) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, callback)(payload)
            except Exception:
                logger.exception("Observer %r failed in %s", observer, callback)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def heartbeat(self, now: Optional[datetime] = None) -> Optional[Suggestion]:
        """Refresh pump data (bounded by a timeout), then attempt a loop."""
        if self.state.is_looping:
            logger.warning("Loop already in progress, heartbeat skipped")
            return None
        if self.pump is not None:
            timeout = self.safety_config.pump_data_timeout_seconds
            try:
                await asyncio.wait_for(self.pump.ensure_current_data(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Pump data not refreshed within %.0f s, looping anyway", timeout)
            except Exception as exc:
                logger.warning("Pump data refresh failed (%s), looping anyway", exc)
        return await self.attempt_loop(now)

    async def attempt_loop(self, now: Optional[datetime] = None) -> Optional[Suggestion]:
        """
        Run one loop attempt.

        Returns the suggestion (enacted copy in closed loop), or ``None`` when the
        trigger was dropped or the attempt failed. Failures end up in
        ``state.last_error`` and are reported to observers, never raised.
        """
        if self.state.is_looping:
            logger.warning("Already looping, skip")
            return None
        self.state.is_looping = True
        self.state.phase = LoopPhase.PREDICTING
        now = now or self._clock()

        error: Optional[LoopError] = None
        suggestion: Optional[Suggestion] = None
        try:
            suggestion = await self._loop(now)
        except LoopError as exc:
            error = exc
        except Exception as exc:
            logger.exception("Unexpected failure during loop")
            error = LoopError(f"Unexpected failure: {exc}")
            error.__cause__ = exc
        finally:
            self._loop_completed(error, now)
        return suggestion if error is None else None

    async def _loop(self, now: datetime) -> Suggestion:
        settings = self.settings_store.load_loop_settings()
        profile = self.profile_store.current()

        if settings.closed_loop and settings.unsuspend_if_no_temp:
            await self._unsuspend_if_no_temp(now)

        suggestion = self.determine_basal(now, profile=profile, settings=settings)
        if not settings.closed_loop:
            self.state.phase = LoopPhase.OPEN_LOOP_DONE
            logger.info("Open loop: suggestion stored, nothing enacted")
            return suggestion

        self.state.phase = LoopPhase.ENACTING
        return await self._enact_suggested(suggestion, profile, settings, now)

    def _loop_completed(self, error: Optional[LoopError], now: datetime) -> None:
        self.state.is_looping = False
        self.state.completed_attempts += 1
        if error is not None:
            self.state.phase = LoopPhase.ERROR
            self.state.last_error = error
            logger.error("Loop failed: %s", error)
            self._notify("loop_did_fail", error)
        else:
            self.state.last_loop_timestamp = now
            self.state.last_error = None
            logger.info("Loop succeeded")
        self.state.phase = LoopPhase.IDLE

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def determine_basal(
        self,
        now: datetime,
        profile: Optional[Profile] = None,
        settings: Optional[LoopSettings] = None,
    ) -> Suggestion:
        """
        Validate glucose, aggregate carbs, predict and persist a suggestion.

        Raises:
            DataFault: If glucose is missing, stale, implausible or flat.
        """
        profile = profile or self.profile_store.current()
        settings = settings or self.settings_store.load_loop_settings()

        glucose = self.glucose_store.recent(now - GLUCOSE_LOOKBACK)
        flat = self.glucose_store.is_flat(self.validator.flat_window_samples)
        latest = self.validator.validate(glucose, now, flat=flat)

        snapshot = profile.resolve(now)
        profile = profile.with_durations(snapshot)
        dose_lookback = GLUCOSE_LOOKBACK + timedelta(hours=profile.dia_hours)
        doses = self.pump_history.recent(now - dose_lookback)
        carbs = self.carb_store.recent(now - CARB_LOOKBACK)

        meal = self.aggregator.aggregate(carbs, glucose, profile, now, doses)
        insulin = InsulinOnBoardCalculator(dia_hours=profile.dia_hours).calculate(doses, profile, now)
        reservoir = self.pump.status().reservoir if self.pump is not None else None

        suggestion = self.determinator.determine(
            current_bg=latest.value,
            insulin=insulin,
            meal=meal,
            snapshot=snapshot,
            settings=settings,
            now=now,
            reservoir=reservoir,
        )
        self.suggestion_store.save(suggestion)
        self._notify("suggestion_did_update", suggestion)
        return suggestion

    # ------------------------------------------------------------------
    # Enactment
    # ------------------------------------------------------------------

    async def _enact_suggested(
        self,
        suggestion: Suggestion,
        profile: Profile,
        settings: LoopSettings,
        now: datetime,
    ) -> Suggestion:
        window = self.safety_config.suggestion_expiration_minutes
        try:
            if suggestion.is_expired(now, window):
                raise ExpiredSuggestion(suggestion.deliver_at, now, window)
            delivered = await self.governor.enact_suggestion(suggestion, self.pump, profile, now, settings)
        except (PumpFault, ExpiredSuggestion):
            self._report_enacted(suggestion.stamped(received=False, at=now))
            raise
        return self._report_enacted(delivered.stamped(received=True, at=now))

    def _report_enacted(self, enacted: Suggestion) -> Suggestion:
        self.suggestion_store.save(enacted, enacted=True)
        self._notify("enacted_suggestion_did_update", enacted)
        return enacted

    async def enact_latest(self, now: Optional[datetime] = None) -> Suggestion:
        """Enact the most recently stored suggestion (manual confirmation in open loop)."""
        now = now or self._clock()
        suggestion = self.suggestion_store.latest()
        if suggestion is None:
            return self._manual_failure(LoopError("Suggestion not found"))
        settings = self.settings_store.load_loop_settings()
        try:
            return await self._enact_suggested(suggestion, self.profile_store.current(), settings, now)
        except LoopError as exc:
            return self._manual_failure(exc)

    async def _unsuspend_if_no_temp(self, now: datetime) -> None:
        pump = self.pump
        if pump is None or not pump.status().suspended:
            return
        if pump.current_temp(now) is not None:
            return
        logger.info("Pump suspended with no temp basal running, resuming")
        await self._pump_call(pump.resume)

    # ------------------------------------------------------------------
    # Manual pump operations
    # ------------------------------------------------------------------

    def _manual_failure(self, error: LoopError):
        self.state.last_error = error
        logger.error("Manual command failed: %s", error)
        self._notify("loop_did_fail", error)
        raise error

    def _require_pump(self) -> PumpAdapter:
        if self.pump is None:
            self._manual_failure(InvalidPumpState("Pump not set"))
        return self.pump

    @staticmethod
    async def _pump_call(command: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            await command(*args, **kwargs)
        except PumpFault:
            raise
        except Exception as exc:
            raise PumpError(f"Pump command failed: {exc}") from exc

    def round_bolus(self, units: float) -> float:
        pump = self._require_pump()
        return self.governor.round_bolus(units, pump, self.profile_store.current().max_bolus)

    async def enact_bolus(self, units: float, automatic: bool = False) -> float:
        """Deliver a bolus through the governor. Returns the units actually sent (0 if skipped)."""
        pump = self._require_pump()
        limits = ProfileLimits.from_profile(self.profile_store.current())
        result = self.governor.authorize(DoseCommand(units=units), pump.status(), limits, pump)
        if isinstance(result, Rejected):
            self._manual_failure(result.error)
        if result.units is None:
            logger.info("Bolus of %.3f U skipped: %s", units, result.reason)
            return 0.0
        try:
            await self._pump_call(pump.enact_bolus, result.units, automatic=automatic)
        except PumpFault as exc:
            self._manual_failure(exc)
        self.governor.adjust_bolus_increment(pump)
        return result.units

    async def enact_temp_basal(self, rate: float, duration: float) -> float:
        pump = self._require_pump()
        limits = ProfileLimits.from_profile(self.profile_store.current())
        command = DoseCommand(rate=rate, duration=duration)
        result = self.governor.authorize(command, pump.status(), limits, pump)
        if isinstance(result, Rejected):
            self._manual_failure(result.error)
        try:
            await self._pump_call(pump.enact_temp_basal, result.rate, result.duration)
        except PumpFault as exc:
            self._manual_failure(exc)
        return result.rate

    async def cancel_bolus(self) -> None:
        pump = self._require_pump()
        try:
            await self._pump_call(pump.cancel_bolus)
        except PumpFault as exc:
            self._manual_failure(exc)

    async def suspend(self) -> None:
        pump = self._require_pump()
        try:
            await self._pump_call(pump.suspend)
        except PumpFault as exc:
            self._manual_failure(exc)

    async def resume(self) -> None:
        pump = self._require_pump()
        try:
            await self._pump_call(pump.resume)
        except PumpFault as exc:
            self._manual_failure(exc)

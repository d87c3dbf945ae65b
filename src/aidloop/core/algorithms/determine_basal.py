from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from aidloop.core.algorithms.carb_absorption import MealResult
from aidloop.core.algorithms.prediction import PredictionEngine, PredictionResult
from aidloop.core.iob import InsulinState
from aidloop.core.models import Suggestion
from aidloop.core.profile import ProfileSnapshot
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.settings import LoopSettings

logger = logging.getLogger("aidloop.prediction")


@dataclass(frozen=True)
class TempDecision:
    rate: Optional[float]
    duration: Optional[float]
    note: str


def low_glucose_threshold(target_bg: float, floor: float = 40.0) -> float:
    """Predicted BG below this forces a zero temp."""
    return target_bg - 0.5 * (target_bg - floor)


class BasalDeterminator:
    """
    Turns a prediction into a raw recommendation: temp basal, microbolus and carbs required.

    The recommendation is unbounded here; limits and pump rounding are applied by
    the dose governor at enactment.
    """

    def __init__(
        self,
        engine: Optional[PredictionEngine] = None,
        safety_config: Optional[SafetyConfig] = None,
    ):
        self.engine = engine
        self.safety_config = safety_config or SafetyConfig()

    @staticmethod
    def engine_for(snapshot: ProfileSnapshot) -> PredictionEngine:
        return PredictionEngine(
            insulin_duration_hours=snapshot.dia_hours,
            cob_duration_hours=snapshot.carb_absorption_hours,
        )

    def temp_decision(self, prediction: PredictionResult, snapshot: ProfileSnapshot) -> TempDecision:
        config = self.safety_config
        threshold = low_glucose_threshold(snapshot.target_bg, config.low_glucose_floor)
        duration = float(config.temp_basal_minutes)

        if prediction.min_pred_bg < threshold:
            return TempDecision(
                0.0, duration,
                f"minPredBG {prediction.min_pred_bg:.0f} < threshold {threshold:.0f}: zero temp",
            )
        if prediction.eventual_bg < snapshot.target_bg and snapshot.isf > 0:
            deficit = (prediction.eventual_bg - snapshot.target_bg) / snapshot.isf
            rate = max(0.0, snapshot.basal_rate + config.max_temp_multiplier * deficit)
            return TempDecision(
                round(rate, 2), duration,
                f"Eventual BG {prediction.eventual_bg:.0f} < {snapshot.target_bg:.0f}: temp {rate:.2f}U/hr",
            )
        if prediction.insulin_req > 0:
            rate = snapshot.basal_rate + config.max_temp_multiplier * prediction.insulin_req
            return TempDecision(
                round(rate, 2), duration,
                f"insulinReq {prediction.insulin_req:.2f}: temp {rate:.2f}U/hr",
            )
        return TempDecision(None, None, "No temp required")

    def carbs_required(
        self,
        prediction: PredictionResult,
        snapshot: ProfileSnapshot,
        settings: LoopSettings,
    ) -> Optional[float]:
        if snapshot.isf <= 0 or snapshot.carb_ratio <= 0:
            return None
        deficit = snapshot.target_bg - prediction.min_pred_bg
        if deficit <= 0:
            return None
        carbs = deficit * snapshot.carb_ratio / snapshot.isf
        if carbs < settings.carbs_req_threshold:
            return None
        return float(round(carbs))

    def determine(
        self,
        current_bg: float,
        insulin: InsulinState,
        meal: MealResult,
        snapshot: ProfileSnapshot,
        settings: LoopSettings,
        now: datetime,
        reservoir: Optional[float] = None,
    ) -> Suggestion:
        bgi = round(-insulin.activity * snapshot.isf * 5, 2)
        engine = self.engine or self.engine_for(snapshot)
        prediction = engine.predict(
            current_bg=current_bg,
            iob=insulin.iob,
            cob=meal.cob,
            isf=snapshot.isf,
            cr=snapshot.carb_ratio,
            basal_rate=snapshot.basal_rate,
            target_bg=snapshot.target_bg,
            deviation=meal.deviation_stats.current,
            bgi=bgi,
            warnings=snapshot.warnings,
        )
        decision = self.temp_decision(prediction, snapshot)

        notes: List[str] = [decision.note]
        units = None
        threshold = low_glucose_threshold(snapshot.target_bg, self.safety_config.low_glucose_floor)
        if settings.enable_smb and prediction.microbolus > 0 and prediction.min_pred_bg >= threshold:
            units = prediction.microbolus
            notes.append(f"SMB {units:.2f}U")

        carbs_req = self.carbs_required(prediction, snapshot, settings)
        if carbs_req is not None:
            notes.append(f"{carbs_req:.0f} add'l carbs req")

        reason = prediction.reason + " " + ", ".join(notes) + "."
        logger.info("Suggestion at %s: %s", now.isoformat(), reason)
        return Suggestion(
            reason=reason,
            timestamp=now,
            deliver_at=now,
            bg=current_bg,
            eventual_bg=prediction.eventual_bg,
            insulin_req=prediction.insulin_req,
            units=units,
            rate=decision.rate,
            duration=decision.duration,
            iob=insulin.iob,
            cob=meal.cob,
            carbs_req=carbs_req,
            sensitivity_ratio=1.0,
            reservoir=reservoir,
            predictions=prediction.predictions,
            warnings=snapshot.warnings,
        )

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Sequence

import numpy as np

from aidloop.core.models import Predictions

logger = logging.getLogger("aidloop.prediction")

MIN_PREDICTED_BG = 40.0
MAX_PREDICTED_BG = 400.0


@dataclass(frozen=True)
class PredictionResult:
    predictions: Predictions
    insulin_req: float
    eventual_bg: float
    min_pred_bg: float
    min_guard_bg: float
    iob_pred_bg: float
    cob_pred_bg: float
    uam_pred_bg: float
    zt_pred_bg: float
    microbolus: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "predBGs": self.predictions.to_dict(),
            "insulinReq": self.insulin_req,
            "eventualBG": self.eventual_bg,
            "minPredBG": self.min_pred_bg,
            "minGuardBG": self.min_guard_bg,
            "IOBpredBG": self.iob_pred_bg,
            "COBpredBG": self.cob_pred_bg,
            "UAMpredBG": self.uam_pred_bg,
            "ZTpredBG": self.zt_pred_bg,
            "microbolus": self.microbolus,
            "reason": self.reason,
        }


def clamp_bg(value: float) -> float:
    return max(MIN_PREDICTED_BG, min(MAX_PREDICTED_BG, value))


class PredictionEngine:
    """
    Fixed step forward simulation of four glucose hypotheses.

    * IOB: active insulin only.
    * ZT: active insulin plus the rise expected if basal delivery stopped now.
    * COB: active insulin plus the remaining carbs on board.
    * UAM: active insulin plus the current unexplained rise, fading out over
      ``uam_duration_hours``.

    The engine is a pure function of its inputs.
    """

    def __init__(
        self,
        insulin_duration_hours: float = 4.0,
        cob_duration_hours: float = 4.0,
        step_minutes: float = 7.5,
        points: int = 48,
        uam_duration_hours: float = 3.0,
        max_microbolus: float = 0.1,
    ):
        if insulin_duration_hours <= 0:
            raise ValueError("insulin_duration_hours must be positive")
        self.insulin_duration_hours = insulin_duration_hours
        self.cob_duration_hours = cob_duration_hours
        self.step_minutes = step_minutes
        self.points = points
        self.uam_duration_hours = uam_duration_hours
        self.max_microbolus = max_microbolus

    @property
    def step_hours(self) -> float:
        return self.step_minutes / 60.0

    @staticmethod
    def insulin_requirement(current_bg: float, target_bg: float, isf: float, iob: float) -> float:
        """Insulin still needed to reach target, net of what is already active. Never negative."""
        if isf <= 0:
            return 0.0
        return max(0.0, (current_bg - target_bg) / isf - iob)

    def simulate(
        self,
        current_bg: float,
        iob: float,
        cob: float,
        isf: float,
        cr: float,
        basal_rate: float,
        deviation: float = 0.0,
    ) -> Dict[str, np.ndarray]:
        """Run the simulation and return the four clamped trajectories."""
        step_hours = self.step_hours
        carbs_active = isf > 0 and cr > 0
        isf_effect = max(0.0, isf)
        uam_rise_per_step = max(0.0, deviation) * self.step_minutes / 5.0
        uam_steps = self.uam_duration_hours * 60.0 / self.step_minutes

        series = {name: np.empty(self.points, dtype=float) for name in ("iob", "zt", "cob", "uam")}
        bg = {name: clamp_bg(current_bg) for name in series}
        for name in series:
            series[name][0] = bg[name]

        iob_remaining = max(0.0, iob)
        cob_remaining = max(0.0, cob)
        for step in range(1, self.points):
            insulin_drop = iob_remaining * isf_effect / self.insulin_duration_hours * step_hours
            basal_rise = max(0.0, basal_rate) * isf_effect * step_hours

            burn_rate = min(cob_remaining, cob_remaining / max(0.25, self.cob_duration_hours))
            carb_rise = 0.0
            if carbs_active:
                carb_rise = burn_rate / cr * isf * step_hours

            uam_fade = max(0.0, 1.0 - (step - 1) / uam_steps)
            uam_rise = uam_rise_per_step * uam_fade

            bg["iob"] = clamp_bg(bg["iob"] - insulin_drop)
            bg["zt"] = clamp_bg(bg["zt"] - insulin_drop + basal_rise)
            bg["cob"] = clamp_bg(bg["cob"] - insulin_drop + carb_rise)
            bg["uam"] = clamp_bg(bg["uam"] - insulin_drop + uam_rise)
            for name in series:
                series[name][step] = bg[name]

            iob_remaining = max(0.0, iob_remaining - iob_remaining * (step_hours / self.insulin_duration_hours))
            cob_remaining = max(0.0, cob_remaining - burn_rate * step_hours)
        return series

    def predict(
        self,
        current_bg: float,
        iob: float,
        cob: float,
        isf: float,
        cr: float,
        basal_rate: float,
        target_bg: float,
        deviation: float = 0.0,
        bgi: float = 0.0,
        warnings: Sequence[str] = (),
    ) -> PredictionResult:
        series = self.simulate(current_bg, iob, cob, isf, cr, basal_rate, deviation=deviation)
        predictions = Predictions(
            iob=tuple(int(v) for v in np.rint(series["iob"])),
            zt=tuple(int(v) for v in np.rint(series["zt"])),
            cob=tuple(int(v) for v in np.rint(series["cob"])),
            uam=tuple(int(v) for v in np.rint(series["uam"])),
        )

        insulin_req = round(self.insulin_requirement(current_bg, target_bg, isf, iob), 2)
        min_pred_bg = float(min(series["iob"].min(), series["cob"].min()))
        min_guard_bg = float(min(values.min() for values in series.values()))
        eventual_bg = float(series["cob"][-1])
        microbolus = round(min(self.max_microbolus, insulin_req), 2) if insulin_req > 0 else 0.0

        result = PredictionResult(
            predictions=predictions,
            insulin_req=insulin_req,
            eventual_bg=round(eventual_bg, 1),
            min_pred_bg=round(min_pred_bg, 1),
            min_guard_bg=round(min_guard_bg, 1),
            iob_pred_bg=round(float(series["iob"][-1]), 1),
            cob_pred_bg=round(float(series["cob"][-1]), 1),
            uam_pred_bg=round(float(series["uam"][-1]), 1),
            zt_pred_bg=round(float(series["zt"][-1]), 1),
            microbolus=microbolus,
            reason="",
        )
        reason = self.format_reason(result, cob, deviation, bgi, isf, cr, target_bg, warnings)
        logger.debug("Prediction: %s", reason)
        return replace(result, reason=reason)

    @staticmethod
    def format_reason(
        result: PredictionResult,
        cob: float,
        deviation: float,
        bgi: float,
        isf: float,
        cr: float,
        target_bg: float,
        warnings: Sequence[str] = (),
    ) -> str:
        comparison = ">=" if result.eventual_bg >= target_bg else "<"
        if result.microbolus > 0:
            microbolus_text = f"Microbolusing {result.microbolus:.2f}U."
        else:
            microbolus_text = "No microbolus."
        reason = (
            f"COB: {int(cob)}, Dev: {deviation:.1f}, BGI: {bgi:.1f}, ISF: {isf:.1f}, "
            f"CR: {int(cr)}, Target: {target_bg:.1f}, minPredBG {result.min_pred_bg:.1f}, "
            f"minGuardBG {result.min_guard_bg:.1f}, IOBpredBG {result.iob_pred_bg:.1f}, "
            f"COBpredBG {result.cob_pred_bg:.1f}; "
            f"Eventual BG {result.eventual_bg:.1f} {comparison} {target_bg:.1f}, "
            f"insulinReq {result.insulin_req:.2f}; {microbolus_text}"
        )
        if warnings:
            reason = "Warning: " + ", ".join(warnings) + "; " + reason
        return reason

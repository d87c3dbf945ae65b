from .carb_absorption import CarbAbsorptionAggregator, DeviationStats, MealResult
from .prediction import PredictionEngine, PredictionResult
from .determine_basal import BasalDeterminator

__all__ = [
    "CarbAbsorptionAggregator",
    "DeviationStats",
    "MealResult",
    "PredictionEngine",
    "PredictionResult",
    "BasalDeterminator",
]

"""
Fill-rate prediction for demand sources.
"""

from .models import FillPrediction, PredictionContext, PredictionFactor, Recommendation, TrainingRecord
from .predictor import FillRatePredictor, seasonality_for

__all__ = [
    "FillRatePredictor",
    "FillPrediction",
    "PredictionContext",
    "PredictionFactor",
    "Recommendation",
    "TrainingRecord",
    "seasonality_for",
]

"""
Learning state and outcome reporting.

This module provides:
- LearningLoop: the single write path into registry, predictor and history
- PerformanceHistory: position-level running aggregates
- OutcomeSink implementations for per-pod results
"""

from .history import HistoricalPerformance, PerformanceHistory
from .loop import LearningLoop
from .sink import JsonlOutcomeSink, LoggingOutcomeSink, MemoryOutcomeSink, OutcomeSink

__all__ = [
    "LearningLoop",
    "HistoricalPerformance",
    "PerformanceHistory",
    "OutcomeSink",
    "LoggingOutcomeSink",
    "JsonlOutcomeSink",
    "MemoryOutcomeSink",
]

"""
Pod strategy planning.

This module provides:
- StrategyPlanner: advisor-backed planning with deterministic fallback
- StrategyAdvisor: external advisor contract
- HttpStrategyAdvisor: advisor reached over HTTP
"""

from .advisor import AdvisorContext, AdvisorFailure, HttpStrategyAdvisor, StrategyAdvisor
from .planner import StrategyPlanner, estimate_user_value, fallback_durations, parse_strategy_payload

__all__ = [
    # Planner
    "StrategyPlanner",
    "fallback_durations",
    "estimate_user_value",
    "parse_strategy_payload",
    # Advisor
    "StrategyAdvisor",
    "HttpStrategyAdvisor",
    "AdvisorContext",
    "AdvisorFailure",
]

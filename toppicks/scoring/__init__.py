"""Scoring module: versioned weights and the weighted-sum scorer."""

from .weights import ScoringWeights
from .scorer import score, MIN_SCORE, MAX_SCORE

__all__ = [
    "ScoringWeights",
    "score",
    "MIN_SCORE",
    "MAX_SCORE",
]

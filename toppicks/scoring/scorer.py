"""
Weighted aggregation of a score breakdown into one compatibility score.
"""

import numpy as np

from ..profiles.schema import ScoreBreakdown
from .weights import ScoringWeights

MIN_SCORE = 0
MAX_SCORE = 100


def score(breakdown: ScoreBreakdown, weights: ScoringWeights) -> int:
    """
    Combine factor sub-scores into an integer score in [0, 100].

    Formula:
        score = round_half_up(sum(w_i * b_i) / sum(w_i))

    Pure and deterministic: identical inputs always give the same output.

    Args:
        breakdown: Per-factor sub-scores
        weights: Versioned factor weights

    Returns:
        Compatibility score in [0, 100]
    """
    w = weights.as_vector()
    total = w.sum()
    if total <= 0:
        raise ValueError(f"Weights {weights.version} have no positive total")

    weighted = float(np.dot(w, breakdown.as_vector()) / total)

    # Half-up rounding; Python's round() is half-to-even
    result = int(np.floor(weighted + 0.5))
    return int(np.clip(result, MIN_SCORE, MAX_SCORE))

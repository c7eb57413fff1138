"""Evaluation module for top-picks ranking analysis."""

from .metrics import (
    compute_score_distribution_stats,
    compare_rankings,
    RankingReport,
    create_ranking_report
)

__all__ = [
    "compute_score_distribution_stats",
    "compare_rankings",
    "RankingReport",
    "create_ranking_report"
]

"""
Evaluation metrics for top-picks rankings.

There is no ground truth for "good" picks, so evaluation focuses on:
1. Score distribution of an epoch
2. Stability between consecutive epochs (overlap and rank agreement)

These metrics describe ranking behavior; they do not measure match outcomes.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Sequence
import json

import numpy as np
import pandas as pd
from scipy.stats import spearmanr

from ..profiles.schema import FACTOR_NAMES
from ..ranking.entry import TopPickEntry

logger = logging.getLogger(__name__)


@dataclass
class ScoreDistributionStats:
    """Statistics about the compatibility scores of one epoch."""
    count: int
    mean: float
    std: float
    min: float
    max: float
    quantiles: Dict[str, float]  # e.g., {"p10": 42.0, "p50": 61.0, "p90": 80.0}
    factor_means: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": int(self.count),
            "mean": float(self.mean),
            "std": float(self.std),
            "min": float(self.min),
            "max": float(self.max),
            "quantiles": {k: float(v) for k, v in self.quantiles.items()},
            "factor_means": {k: float(v) for k, v in self.factor_means.items()},
        }


@dataclass
class RankStabilityMetrics:
    """Agreement between two rankings of the same subject."""
    top_k: int
    jaccard_overlap: float  # Overlap of the top-k candidate sets
    n_shared: int  # Candidates present in both rankings
    rank_spearman: Optional[float]  # Rank correlation on shared candidates
    mean_abs_score_change: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "top_k": int(self.top_k),
            "jaccard_overlap": float(self.jaccard_overlap),
            "n_shared": int(self.n_shared),
            "rank_spearman": None if self.rank_spearman is None else float(self.rank_spearman),
            "mean_abs_score_change": (
                None if self.mean_abs_score_change is None else float(self.mean_abs_score_change)
            ),
        }


@dataclass
class RankingReport:
    """
    Evaluation report for one epoch of a subject's picks.

    Contains distribution statistics and, when a previous ranking is given,
    stability against it.
    """
    subject_id: str
    algorithm_version: Optional[str]
    distribution_stats: Optional[ScoreDistributionStats]
    stability_metrics: Optional[RankStabilityMetrics] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "subject_id": self.subject_id,
            "algorithm_version": self.algorithm_version,
            "distribution_stats": (
                self.distribution_stats.to_dict() if self.distribution_stats else None
            ),
        }
        if self.stability_metrics:
            result["stability_metrics"] = self.stability_metrics.to_dict()
        return result

    def save(self, filepath: str) -> None:
        """Save report to JSON file."""
        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Saved ranking report to {filepath}")

    def summary(self) -> str:
        """Generate text summary of the report."""
        lines = [
            f"Ranking Report: {self.subject_id} ({self.algorithm_version})",
            "=" * 50,
        ]

        if self.distribution_stats is None:
            lines.append("No entries")
        else:
            stats = self.distribution_stats
            lines.extend([
                "",
                f"Score Distribution ({stats.count} picks):",
                f"  Mean: {stats.mean:.2f}",
                f"  Std:  {stats.std:.2f}",
                f"  Min:  {stats.min:.0f}",
                f"  Max:  {stats.max:.0f}",
            ])
            for q_name, q_value in stats.quantiles.items():
                lines.append(f"  {q_name}: {q_value:.2f}")

        if self.stability_metrics:
            m = self.stability_metrics
            lines.extend([
                "",
                f"Stability vs previous epoch (top {m.top_k}):",
                f"  Jaccard overlap: {m.jaccard_overlap:.4f}",
                f"  Shared candidates: {m.n_shared}",
            ])
            if m.rank_spearman is not None:
                lines.append(f"  Rank Spearman: {m.rank_spearman:.4f}")
            if m.mean_abs_score_change is not None:
                lines.append(f"  Mean |score change|: {m.mean_abs_score_change:.2f}")

        return "\n".join(lines)


def _entries_frame(entries: Sequence[TopPickEntry]) -> pd.DataFrame:
    return pd.DataFrame([
        {"candidate_id": e.candidate_id, "rank": e.rank, "score": e.compatibility_score,
         **e.breakdown.to_dict()}
        for e in entries
    ])


def compute_score_distribution_stats(
    entries: Sequence[TopPickEntry],
    quantiles: List[float] = [0.1, 0.25, 0.5, 0.75, 0.9]
) -> ScoreDistributionStats:
    """
    Compute distribution statistics for the scores of a ranking.

    Args:
        entries: Entries of one epoch (must be non-empty)
        quantiles: Quantile values to compute (default: p10, p25, p50, p75, p90)

    Returns:
        ScoreDistributionStats instance
    """
    if not entries:
        raise ValueError("Cannot compute score distribution of an empty ranking")

    df = _entries_frame(entries)
    scores = df["score"].to_numpy(dtype=float)

    quantile_dict = {
        f"p{int(q * 100)}": float(np.percentile(scores, q * 100))
        for q in quantiles
    }

    return ScoreDistributionStats(
        count=len(scores),
        mean=float(np.mean(scores)),
        std=float(np.std(scores)),
        min=float(np.min(scores)),
        max=float(np.max(scores)),
        quantiles=quantile_dict,
        factor_means={name: float(df[name].mean()) for name in FACTOR_NAMES},
    )


def compare_rankings(
    previous: Sequence[TopPickEntry],
    current: Sequence[TopPickEntry],
    top_k: int = 10
) -> RankStabilityMetrics:
    """
    Measure how much a subject's ranking changed between two epochs.

    Args:
        previous: Entries of the earlier epoch
        current: Entries of the later epoch
        top_k: Number of top positions used for the Jaccard overlap

    Returns:
        RankStabilityMetrics instance
    """
    top_prev = {e.candidate_id for e in previous if e.rank <= top_k}
    top_curr = {e.candidate_id for e in current if e.rank <= top_k}
    union = top_prev | top_curr
    jaccard = len(top_prev & top_curr) / len(union) if union else 1.0

    prev_by_id = {e.candidate_id: e for e in previous}
    shared = sorted(e.candidate_id for e in current if e.candidate_id in prev_by_id)
    curr_by_id = {e.candidate_id: e for e in current}

    rank_spearman = None
    score_change = None
    if shared:
        score_change = float(np.mean([
            abs(curr_by_id[c].compatibility_score - prev_by_id[c].compatibility_score)
            for c in shared
        ]))
    if len(shared) > 1:
        prev_ranks = [prev_by_id[c].rank for c in shared]
        curr_ranks = [curr_by_id[c].rank for c in shared]
        rho, _ = spearmanr(prev_ranks, curr_ranks)
        rank_spearman = None if np.isnan(rho) else float(rho)

    return RankStabilityMetrics(
        top_k=top_k,
        jaccard_overlap=jaccard,
        n_shared=len(shared),
        rank_spearman=rank_spearman,
        mean_abs_score_change=score_change,
    )


def create_ranking_report(
    subject_id: str,
    entries: Sequence[TopPickEntry],
    previous: Optional[Sequence[TopPickEntry]] = None,
    quantiles: List[float] = [0.1, 0.25, 0.5, 0.75, 0.9],
    top_k: int = 10
) -> RankingReport:
    """
    Create a complete ranking report.

    Args:
        subject_id: Subject the ranking belongs to
        entries: Entries of the new epoch
        previous: Entries of the epoch it replaces (for stability metrics)
        quantiles: Quantiles to compute
        top_k: Top positions for the overlap metric

    Returns:
        RankingReport instance
    """
    dist_stats = compute_score_distribution_stats(entries, quantiles) if entries else None

    stability = None
    if previous:
        stability = compare_rankings(previous, entries, top_k)

    return RankingReport(
        subject_id=subject_id,
        algorithm_version=entries[0].algorithm_version if entries else None,
        distribution_stats=dist_stats,
        stability_metrics=stability,
    )

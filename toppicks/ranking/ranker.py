"""
Candidate ranking for top picks.

Every candidate is scored so the sort is correct, but only the best top_n
become entries.

Ordering (total, so no tie survives):
1. compatibility score, descending
2. profile-quality sub-score, descending
3. candidate id, ascending
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Any, Iterable, List, Optional

import pandas as pd

from ..feature_engineering import FeatureConfig, extract_features
from ..profiles.schema import CandidateProfile
from ..scoring import ScoringWeights, score
from .entry import TopPickEntry

logger = logging.getLogger(__name__)


@dataclass
class RankerConfig:
    """
    Configuration for ranking.

    Attributes:
        top_n: Number of entries kept per subject
    """
    top_n: int = 10

    def validate(self) -> None:
        """Validate configuration values."""
        if not isinstance(self.top_n, int) or self.top_n < 1:
            raise ValueError(f"top_n must be a positive integer, got {self.top_n}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RankerConfig":
        """Create from main config dictionary."""
        ranking_config = config.get("ranking", {})
        ranker_config = cls(top_n=ranking_config.get("top_n", 10))
        ranker_config.validate()
        return ranker_config


def rank(
    subject: CandidateProfile,
    candidates: Iterable[CandidateProfile],
    feature_config: Optional[FeatureConfig] = None,
    weights: Optional[ScoringWeights] = None,
    ranker_config: Optional[RankerConfig] = None,
    as_of: Optional[datetime] = None
) -> List[TopPickEntry]:
    """
    Score and order candidates for a subject.

    The candidate iterable is consumed once. The subject itself and repeated
    candidate ids are skipped (the first occurrence wins).

    Args:
        subject: User the picks are computed for
        candidates: Finite sequence of eligible candidates
        feature_config: Factor thresholds (defaults if None)
        weights: Versioned factor weights (defaults if None)
        ranker_config: Ranking configuration (defaults if None)
        as_of: Reference time for recency and computed_at (defaults to now, UTC)

    Returns:
        Entries with ranks 1..min(top_n, number of distinct candidates)
    """
    feature_config = feature_config or FeatureConfig()
    weights = weights or ScoringWeights()
    ranker_config = ranker_config or RankerConfig()
    if as_of is None:
        as_of = datetime.now(timezone.utc)

    occupation_table = feature_config.occupation_table()
    seen_ids = set()
    breakdowns = {}
    rows = []

    for candidate in candidates:
        cid = candidate.profile_id
        if cid == subject.profile_id:
            continue
        if cid in seen_ids:
            logger.warning(f"Duplicate candidate {cid} for subject {subject.profile_id}; keeping first")
            continue
        seen_ids.add(cid)

        breakdown = extract_features(subject, candidate, feature_config, as_of, occupation_table)
        breakdowns[cid] = breakdown
        rows.append({
            "candidate_id": cid,
            "score": score(breakdown, weights),
            "quality": breakdown.profile_quality,
        })

    if not rows:
        logger.info(f"No candidates to rank for subject {subject.profile_id}")
        return []

    df = pd.DataFrame(rows)
    # Stable multi-key sort gives a total order
    df = df.sort_values(
        by=["score", "quality", "candidate_id"],
        ascending=[False, False, True],
        kind="mergesort"
    ).head(ranker_config.top_n)

    entries = [
        TopPickEntry(
            subject_id=subject.profile_id,
            candidate_id=cid,
            breakdown=breakdowns[cid],
            weights=weights,
            rank=position,
            computed_at=as_of,
        )
        for position, cid in enumerate(df["candidate_id"], start=1)
    ]

    logger.info(
        f"Ranked {len(rows)} candidates for subject {subject.profile_id}; "
        f"kept top {len(entries)} (weights {weights.version})"
    )
    return entries

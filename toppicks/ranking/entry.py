"""
TopPickEntry: one ranked result for a (subject, candidate) pair.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from ..profiles.schema import ScoreBreakdown
from ..scoring import ScoringWeights, score


@dataclass(frozen=True)
class TopPickEntry:
    """
    One ranking result.

    compatibility_score is derived from breakdown and weights on construction
    and cannot be passed in. Copies made with dataclasses.replace recompute it.

    Attributes:
        subject_id: User the pick was computed for
        candidate_id: Prospective match
        breakdown: Factor sub-scores
        weights: Weights (and algorithm version) used for the score
        rank: 1-based position within the epoch
        computed_at: Time the ranking was computed
        epoch_id: Epoch the entry belongs to (None until stored)
        seen: Whether the subject has viewed this pick
        seen_at: Time of the first view
        active: Whether the entry belongs to the subject's active epoch
    """
    subject_id: str
    candidate_id: str
    breakdown: ScoreBreakdown
    weights: ScoringWeights = field(repr=False)
    rank: int
    computed_at: datetime
    epoch_id: Optional[str] = None
    seen: bool = False
    seen_at: Optional[datetime] = None
    active: bool = True
    compatibility_score: int = field(init=False)

    def __post_init__(self):
        if self.rank < 1:
            raise ValueError(f"rank must be >= 1, got {self.rank}")
        if self.seen_at is not None and not self.seen:
            raise ValueError("seen_at set on an unseen entry")
        object.__setattr__(self, "compatibility_score", score(self.breakdown, self.weights))

    @property
    def algorithm_version(self) -> str:
        return self.weights.version

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary (weights stored per epoch)."""
        return {
            "subject_id": self.subject_id,
            "candidate_id": self.candidate_id,
            "compatibility_score": self.compatibility_score,
            "breakdown": self.breakdown.to_dict(),
            "rank": self.rank,
            "algorithm_version": self.algorithm_version,
            "computed_at": self.computed_at.isoformat(),
            "epoch_id": self.epoch_id,
            "seen": self.seen,
            "seen_at": self.seen_at.isoformat() if self.seen_at else None,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], weights: ScoringWeights) -> "TopPickEntry":
        """Create from dictionary; the stored score is recomputed, not trusted."""
        seen_at = data.get("seen_at")
        return cls(
            subject_id=data["subject_id"],
            candidate_id=data["candidate_id"],
            breakdown=ScoreBreakdown.from_dict(data["breakdown"]),
            weights=weights,
            rank=int(data["rank"]),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            epoch_id=data.get("epoch_id"),
            seen=bool(data.get("seen", False)),
            seen_at=datetime.fromisoformat(seen_at) if seen_at else None,
            active=bool(data.get("active", True)),
        )

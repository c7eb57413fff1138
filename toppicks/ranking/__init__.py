"""Ranking module: ordered top-pick entries for a subject."""

from .entry import TopPickEntry
from .ranker import RankerConfig, rank

__all__ = [
    "TopPickEntry",
    "RankerConfig",
    "rank",
]

"""
Top Picks Compatibility Ranking Engine

This package computes, persists and serves "Top Picks": a ranked list of
prospective matches for a subject, each with a 0-100 compatibility score and
a per-factor breakdown.

Key Design Decisions:
- Factor-level data problems resolve to a neutral score, never to an error
- The aggregate score is always derived from the breakdown and the weights
- Weights are versioned and stored with every epoch of results
- Epochs are swapped atomically: readers never see a partial ranking
"""

__version__ = "1.0.0"

"""
Top-picks computation runner.

This is the entrypoint an external scheduler calls to refresh a subject's
picks. One computation is a self-contained unit of work:

1. Read the subject's current epoch id (the compare-and-swap base)
2. Score and rank the candidates under the caller's deadline
3. Publish the result as the new active epoch
4. Log distribution and stability against the previous epoch

The deadline is checked between candidate reads and once more before the
store write. On expiry nothing is committed and the previous epoch stays
visible.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Iterable, Iterator, List, Optional, Tuple

from .errors import ComputationTimeoutError, TopPicksError
from .evaluation import create_ranking_report
from .feature_engineering import FeatureConfig
from .profiles.schema import CandidateProfile
from .ranking import RankerConfig, rank
from .scoring import ScoringWeights
from .storage import Epoch, TopPicksStore

logger = logging.getLogger(__name__)


@dataclass
class RunSettings:
    """
    Everything one computation needs besides its inputs.

    Attributes:
        feature_config: Factor thresholds and lookup tables
        weights: Versioned scoring weights
        ranker_config: Top-N configuration
        timeout_seconds: Default deadline (None = unbounded)
        freshness_hours: Age under which an active epoch is considered fresh
    """
    feature_config: FeatureConfig = field(default_factory=FeatureConfig)
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    ranker_config: RankerConfig = field(default_factory=RankerConfig)
    timeout_seconds: Optional[float] = None
    freshness_hours: float = 24.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RunSettings":
        """Create from main config dictionary."""
        ranking_config = config.get("ranking", {})
        return cls(
            feature_config=FeatureConfig.from_config(config),
            weights=ScoringWeights.from_config(config),
            ranker_config=RankerConfig.from_config(config),
            timeout_seconds=ranking_config.get("timeout_seconds"),
            freshness_hours=ranking_config.get("freshness_hours", 24.0),
        )


def _check_deadline(deadline: Optional[float], subject_id: str, stage: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise ComputationTimeoutError(
            f"Top-picks computation for {subject_id} exceeded its deadline during {stage}"
        )


def _bounded(
    candidates: Iterable[CandidateProfile],
    deadline: Optional[float],
    subject_id: str
) -> Iterator[CandidateProfile]:
    """Yield candidates, failing once the deadline has passed."""
    for candidate in candidates:
        _check_deadline(deadline, subject_id, "candidate extraction")
        yield candidate
    _check_deadline(deadline, subject_id, "candidate extraction")


def run_top_picks(
    subject: CandidateProfile,
    candidates: Iterable[CandidateProfile],
    store: TopPicksStore,
    settings: Optional[RunSettings] = None,
    timeout: Optional[float] = None,
    as_of: Optional[datetime] = None,
    skip_if_fresh: bool = False
) -> Optional[Epoch]:
    """
    Compute and publish a subject's top picks.

    Args:
        subject: User to compute picks for
        candidates: Eligible candidates (already filtered upstream)
        store: Destination store
        settings: Run settings (defaults if None)
        timeout: Deadline in seconds (overrides settings.timeout_seconds)
        as_of: Reference time for recency and timestamps (defaults to now, UTC)
        skip_if_fresh: Return None without computing if the active epoch is
            younger than settings.freshness_hours

    Returns:
        The committed Epoch, or None when skipped as fresh

    Raises:
        ComputationTimeoutError: Deadline expired; nothing committed
        ConcurrentReplacementError: Another computation for the subject won
        StorageUnavailableError: Store failure; previous epoch stays active
    """
    settings = settings or RunSettings()
    if timeout is None:
        timeout = settings.timeout_seconds
    deadline = time.monotonic() + timeout if timeout is not None else None
    if as_of is None:
        as_of = datetime.now(timezone.utc)
    subject_id = subject.profile_id

    if skip_if_fresh and store.is_fresh(
        subject_id, timedelta(hours=settings.freshness_hours), now=as_of
    ):
        logger.info(f"Top picks for {subject_id} are fresh; skipping computation")
        return None

    expected_epoch_id = store.current_epoch_id(subject_id)
    previous_entries = store.get_active(subject_id) if expected_epoch_id else []

    entries = rank(
        subject,
        _bounded(candidates, deadline, subject_id),
        feature_config=settings.feature_config,
        weights=settings.weights,
        ranker_config=settings.ranker_config,
        as_of=as_of,
    )

    _check_deadline(deadline, subject_id, "commit")
    epoch = store.replace_active_epoch(
        subject_id,
        entries,
        settings.weights,
        expected_epoch_id=expected_epoch_id,
        computed_at=as_of,
    )

    report = create_ranking_report(
        subject_id,
        list(epoch.entries),
        previous=previous_entries,
        top_k=settings.ranker_config.top_n,
    )
    logger.debug("\n" + report.summary())
    if report.stability_metrics:
        logger.info(
            f"Epoch {epoch.epoch_id} for {subject_id}: top-{report.stability_metrics.top_k} "
            f"overlap with previous {report.stability_metrics.jaccard_overlap:.2f}"
        )

    return epoch


def run_batch(
    jobs: Iterable[Tuple[CandidateProfile, Iterable[CandidateProfile]]],
    store: TopPicksStore,
    settings: Optional[RunSettings] = None,
    timeout: Optional[float] = None,
    as_of: Optional[datetime] = None,
    skip_if_fresh: bool = False
) -> Dict[str, Any]:
    """
    Run computations for several independent subjects, one after another.

    Failures from the top-picks error taxonomy are logged and collected; they
    never stop the batch. The timeout applies to each subject separately.

    Args:
        jobs: (subject, candidates) pairs
        store: Destination store
        settings: Run settings (defaults if None)
        timeout: Per-subject deadline in seconds
        as_of: Reference time shared by every computation
        skip_if_fresh: Skip subjects whose picks are still fresh

    Returns:
        Dictionary with "committed" (subject -> epoch id), "skipped" and
        "failed" (subject -> error message)
    """
    committed: Dict[str, str] = {}
    skipped: List[str] = []
    failed: Dict[str, str] = {}

    for subject, candidates in jobs:
        try:
            epoch = run_top_picks(
                subject, candidates, store,
                settings=settings, timeout=timeout, as_of=as_of,
                skip_if_fresh=skip_if_fresh,
            )
        except TopPicksError as e:
            logger.warning(f"Top picks for {subject.profile_id} not updated: {e}")
            failed[subject.profile_id] = str(e)
            continue

        if epoch is None:
            skipped.append(subject.profile_id)
        else:
            committed[subject.profile_id] = epoch.epoch_id

    logger.info(
        f"Batch complete: {len(committed)} committed, {len(skipped)} skipped, {len(failed)} failed"
    )
    return {"committed": committed, "skipped": skipped, "failed": failed}

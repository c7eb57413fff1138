"""
Epoch-based storage protocol for top picks.

Each ranking computation produces one epoch of entries for a subject. An epoch
moves through three states:

    computing -> active -> superseded

A new epoch is written in full while still invisible (computing). It becomes
visible through a single swap of the subject's EpochPointer, which also moves
the previous epoch into history (superseded). Readers resolve the pointer
first, so they see either the old epoch or the new one, never a mix. If
anything fails before the swap, the previous epoch stays active.

Concrete stores only provide primitive reads and writes. The protocol itself
(validation, per-subject exclusion, compare-and-swap, seen bookkeeping) lives
in TopPicksStore.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Any, Iterator, List, Optional, Sequence, Tuple

from ..errors import ConcurrentReplacementError, StorageUnavailableError
from ..ranking.entry import TopPickEntry
from ..scoring import ScoringWeights

logger = logging.getLogger(__name__)


class EpochState(Enum):
    """Lifecycle of one generation of ranking results."""
    COMPUTING = "computing"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class _AnyEpoch:
    def __repr__(self):
        return "ANY_EPOCH"


# Sentinel: skip the compare-and-swap check on replacement
ANY_EPOCH = _AnyEpoch()


@dataclass(frozen=True)
class Epoch:
    """
    One complete, atomically swapped generation of results for a subject.

    Entries are stored without seen state; seen marks are kept separately per
    epoch so marking a pick seen never rewrites the epoch itself.
    """
    epoch_id: str
    subject_id: str
    weights: ScoringWeights
    computed_at: datetime
    entries: Tuple[TopPickEntry, ...]
    state: EpochState = EpochState.COMPUTING

    @property
    def algorithm_version(self) -> str:
        return self.weights.version

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epoch_id": self.epoch_id,
            "subject_id": self.subject_id,
            "algorithm_version": self.algorithm_version,
            "weights": self.weights.to_dict(),
            "computed_at": self.computed_at.isoformat(),
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], state: EpochState) -> "Epoch":
        weights = ScoringWeights.from_dict(data["weights"])
        return cls(
            epoch_id=data["epoch_id"],
            subject_id=data["subject_id"],
            weights=weights,
            computed_at=datetime.fromisoformat(data["computed_at"]),
            entries=tuple(TopPickEntry.from_dict(e, weights) for e in data["entries"]),
            state=state,
        )


@dataclass(frozen=True)
class EpochPointer:
    """
    The single record whose swap publishes a new epoch.

    Attributes:
        active_epoch_id: Epoch currently visible to readers
        history: Committed epoch ids, oldest first (active one last)
    """
    active_epoch_id: Optional[str] = None
    history: Tuple[str, ...] = field(default_factory=tuple)

    def advance(self, epoch_id: str) -> "EpochPointer":
        return EpochPointer(active_epoch_id=epoch_id, history=self.history + (epoch_id,))

    def to_dict(self) -> Dict[str, Any]:
        return {"active_epoch_id": self.active_epoch_id, "history": list(self.history)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EpochPointer":
        return cls(active_epoch_id=d.get("active_epoch_id"), history=tuple(d.get("history", [])))


def validate_entries(subject_id: str, entries: Sequence[TopPickEntry]) -> None:
    """
    Check the invariants an epoch must satisfy before it is written.

    Raises:
        ValueError: If entries belong to another subject, ranks are not
            1..n without gaps, or a candidate appears twice
    """
    candidate_ids = set()
    for entry in entries:
        if entry.subject_id != subject_id:
            raise ValueError(
                f"Entry for subject {entry.subject_id} passed to epoch of {subject_id}"
            )
        if entry.candidate_id in candidate_ids:
            raise ValueError(f"Candidate {entry.candidate_id} appears twice")
        candidate_ids.add(entry.candidate_id)

    ranks = sorted(e.rank for e in entries)
    if ranks != list(range(1, len(entries) + 1)):
        raise ValueError(f"Ranks must be contiguous from 1, got {ranks}")


class TopPicksStore(ABC):
    """
    Base class for top-picks stores.

    Subclasses implement the primitive operations (_read_pointer,
    _write_pointer, _read_epoch, _write_epoch, _read_seen, _write_seen).
    Primitive failures must be raised as StorageUnavailableError.
    """

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._replace_locks: Dict[str, threading.Lock] = {}
        self._seen_locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    @abstractmethod
    def _read_pointer(self, subject_id: str) -> EpochPointer:
        """Return the subject's pointer (an empty pointer if none exists)."""

    @abstractmethod
    def _write_pointer(self, subject_id: str, pointer: EpochPointer) -> None:
        """Replace the subject's pointer in one atomic step."""

    @abstractmethod
    def _read_epoch(self, subject_id: str, epoch_id: str) -> Dict[str, Any]:
        """Return the serialized epoch."""

    @abstractmethod
    def _write_epoch(self, epoch: Epoch) -> None:
        """Persist a complete epoch. Not visible until the pointer names it."""

    @abstractmethod
    def _read_seen(self, subject_id: str, epoch_id: str) -> Dict[str, datetime]:
        """Return candidate_id -> seen_at for an epoch."""

    @abstractmethod
    def _write_seen(self, subject_id: str, epoch_id: str, seen: Dict[str, datetime]) -> None:
        """Replace the seen marks of an epoch."""

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def _lock_for(self, registry: Dict[str, threading.Lock], subject_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = registry.get(subject_id)
            if lock is None:
                lock = registry[subject_id] = threading.Lock()
            return lock

    @contextmanager
    def _replacement_guard(self, subject_id: str) -> Iterator[None]:
        """
        Exclude other replacements of the subject's epoch.

        Never waits: raises ConcurrentReplacementError if a replacement is in
        flight. Stores shared between processes extend this with a lock the
        other processes can see.
        """
        lock = self._lock_for(self._replace_locks, subject_id)
        if not lock.acquire(blocking=False):
            raise ConcurrentReplacementError(subject_id, "Replacement already in flight")
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def current_epoch_id(self, subject_id: str) -> Optional[str]:
        """Id of the subject's active epoch, or None."""
        return self._read_pointer(subject_id).active_epoch_id

    def replace_active_epoch(
        self,
        subject_id: str,
        entries: Sequence[TopPickEntry],
        weights: ScoringWeights,
        expected_epoch_id: Any = ANY_EPOCH,
        computed_at: Optional[datetime] = None
    ) -> Epoch:
        """
        Atomically publish entries as the subject's new active epoch.

        Args:
            subject_id: Subject the epoch belongs to
            entries: Ranked entries (ranks 1..n, one per candidate)
            weights: Weights the entries were scored with
            expected_epoch_id: Active epoch id the caller based its work on
                (None for "no epoch yet"). ANY_EPOCH skips the check.
            computed_at: Epoch timestamp (defaults to the entries' computed_at or now)

        Returns:
            The committed Epoch (state ACTIVE)

        Raises:
            ValueError: If entries violate the epoch invariants
            ConcurrentReplacementError: If another replacement for the subject is
                in flight, or expected_epoch_id is stale
            StorageUnavailableError: If the write fails; the previous epoch stays active
        """
        validate_entries(subject_id, entries)
        for entry in entries:
            if entry.algorithm_version != weights.version:
                raise ValueError(
                    f"Entry scored with {entry.algorithm_version}, epoch uses {weights.version}"
                )

        with self._replacement_guard(subject_id):
            pointer = self._read_pointer(subject_id)
            if expected_epoch_id is not ANY_EPOCH and pointer.active_epoch_id != expected_epoch_id:
                raise ConcurrentReplacementError(
                    subject_id,
                    f"Stale epoch: expected {expected_epoch_id}, active is {pointer.active_epoch_id}"
                )

            epoch_id = uuid.uuid4().hex
            if computed_at is None:
                computed_at = entries[0].computed_at if entries else datetime.now(timezone.utc)

            epoch = Epoch(
                epoch_id=epoch_id,
                subject_id=subject_id,
                weights=weights,
                computed_at=computed_at,
                entries=tuple(
                    replace(e, epoch_id=epoch_id, seen=False, seen_at=None, active=True)
                    for e in sorted(entries, key=lambda e: e.rank)
                ),
            )

            # Invisible until the pointer swap below
            self._write_epoch(epoch)
            self._write_pointer(subject_id, pointer.advance(epoch_id))

        logger.info(
            f"Activated epoch {epoch_id} for subject {subject_id}: "
            f"{len(epoch.entries)} entries, weights {weights.version}"
            + (f", superseded {pointer.active_epoch_id}" if pointer.active_epoch_id else "")
        )
        return replace(epoch, state=EpochState.ACTIVE)

    def _load_epoch(self, subject_id: str, epoch_id: str, state: EpochState) -> Epoch:
        try:
            epoch = Epoch.from_dict(self._read_epoch(subject_id, epoch_id), state)
        except (KeyError, ValueError, TypeError) as e:
            raise StorageUnavailableError(f"Epoch {epoch_id} is unreadable: {e}") from e
        if epoch.subject_id != subject_id:
            raise StorageUnavailableError(
                f"Epoch {epoch_id} belongs to subject {epoch.subject_id}, not {subject_id}"
            )

        seen = self._read_seen(subject_id, epoch_id)
        active = state == EpochState.ACTIVE
        entries = tuple(
            replace(
                e,
                seen=e.candidate_id in seen,
                seen_at=seen.get(e.candidate_id),
                active=active,
            )
            for e in epoch.entries
        )
        return replace(epoch, entries=entries)

    def get_active(self, subject_id: str, limit: Optional[int] = None) -> List[TopPickEntry]:
        """
        Active entries for a subject ordered by rank.

        Returns an empty list when the subject has no active epoch yet.
        """
        epoch_id = self.current_epoch_id(subject_id)
        if epoch_id is None:
            return []

        entries = sorted(
            self._load_epoch(subject_id, epoch_id, EpochState.ACTIVE).entries,
            key=lambda e: e.rank
        )
        if limit is not None:
            entries = entries[:max(limit, 0)]
        return entries

    def get_history(self, subject_id: str) -> List[Epoch]:
        """Superseded epochs for audit, oldest first."""
        pointer = self._read_pointer(subject_id)
        return [
            self._load_epoch(subject_id, epoch_id, EpochState.SUPERSEDED)
            for epoch_id in pointer.history
            if epoch_id != pointer.active_epoch_id
        ]

    def mark_seen(
        self,
        subject_id: str,
        candidate_id: str,
        now: Optional[datetime] = None
    ) -> Optional[TopPickEntry]:
        """
        Mark an active pick as seen.

        Only the first call records a timestamp; later calls return the entry
        unchanged. Returns None when the candidate is not in the active epoch.
        A call racing an epoch replacement may land on the superseded epoch.
        """
        epoch_id = self.current_epoch_id(subject_id)
        if epoch_id is None:
            return None
        marked = self._mark_seen_in_epoch(subject_id, epoch_id, [candidate_id], now)
        return marked[0] if marked else None

    def mark_all_seen(
        self,
        subject_id: str,
        limit: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> List[TopPickEntry]:
        """Mark the first `limit` active picks seen (all when limit is None)."""
        epoch_id = self.current_epoch_id(subject_id)
        if epoch_id is None:
            return []
        epoch = self._load_epoch(subject_id, epoch_id, EpochState.ACTIVE)
        ordered = sorted(epoch.entries, key=lambda e: e.rank)
        if limit is not None:
            ordered = ordered[:max(limit, 0)]
        return self._mark_seen_in_epoch(
            subject_id, epoch_id, [e.candidate_id for e in ordered], now
        )

    def _mark_seen_in_epoch(
        self,
        subject_id: str,
        epoch_id: str,
        candidate_ids: List[str],
        now: Optional[datetime]
    ) -> List[TopPickEntry]:
        if now is None:
            now = datetime.now(timezone.utc)

        with self._lock_for(self._seen_locks, subject_id):
            epoch = self._load_epoch(subject_id, epoch_id, EpochState.ACTIVE)
            by_candidate = {e.candidate_id: e for e in epoch.entries}
            seen = self._read_seen(subject_id, epoch_id)

            newly_seen = [
                cid for cid in candidate_ids
                if cid in by_candidate and cid not in seen
            ]
            if newly_seen:
                seen = dict(seen)
                for cid in newly_seen:
                    seen[cid] = now
                self._write_seen(subject_id, epoch_id, seen)
                logger.debug(f"Marked {len(newly_seen)} picks seen for subject {subject_id}")

        return [
            replace(by_candidate[cid], seen=True, seen_at=seen[cid])
            for cid in candidate_ids
            if cid in by_candidate
        ]

    def count_unseen(self, subject_id: str) -> int:
        return sum(1 for e in self.get_active(subject_id) if not e.seen)

    def is_fresh(
        self,
        subject_id: str,
        max_age: timedelta,
        now: Optional[datetime] = None
    ) -> bool:
        """Whether the active epoch was computed within max_age of now."""
        epoch_id = self.current_epoch_id(subject_id)
        if epoch_id is None:
            return False
        if now is None:
            now = datetime.now(timezone.utc)

        computed_at = self._load_epoch(subject_id, epoch_id, EpochState.ACTIVE).computed_at
        if computed_at.tzinfo is None and now.tzinfo is not None:
            computed_at = computed_at.replace(tzinfo=timezone.utc)
        elif computed_at.tzinfo is not None and now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now - computed_at <= max_age

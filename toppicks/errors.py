"""
Error taxonomy for top-picks computation.

- InvalidInputError: a single factor cannot be computed from the profiles.
  Absorbed by the feature extractor, never surfaced to callers.
- StorageUnavailableError: the store could not complete a read or replace.
- ConcurrentReplacementError: another replacement for the same subject is in
  flight, or the caller's epoch id is stale.
- ComputationTimeoutError: the caller's deadline expired before commit.
"""


class TopPicksError(Exception):
    """Base class for all top-picks errors."""


class InvalidInputError(TopPicksError, ValueError):
    """Missing or malformed attribute needed for a specific factor."""


class StorageUnavailableError(TopPicksError):
    """The store cannot complete the requested read or write."""


class ConcurrentReplacementError(TopPicksError):
    """Epoch replacement lost a race against another replacement."""

    def __init__(self, subject_id: str, message: str):
        super().__init__(f"{message} (subject={subject_id})")
        self.subject_id = subject_id


class ComputationTimeoutError(TopPicksError, TimeoutError):
    """Computation exceeded the caller-supplied deadline."""

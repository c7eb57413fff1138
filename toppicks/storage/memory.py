"""
In-process top-picks store.

Epochs are kept in serialized form so readers never share mutable state with
writers. Pointer replacement is a single dictionary assignment.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Tuple

from ..errors import StorageUnavailableError
from .base import TopPicksStore, Epoch, EpochPointer

logger = logging.getLogger(__name__)


class InMemoryTopPicksStore(TopPicksStore):
    """Dictionary-backed store, safe for use from multiple threads."""

    def __init__(self):
        super().__init__()
        self._pointers: Dict[str, EpochPointer] = {}
        self._epochs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._seen: Dict[Tuple[str, str], Dict[str, datetime]] = {}

    def _read_pointer(self, subject_id: str) -> EpochPointer:
        return self._pointers.get(subject_id, EpochPointer())

    def _write_pointer(self, subject_id: str, pointer: EpochPointer) -> None:
        self._pointers[subject_id] = pointer

    def _read_epoch(self, subject_id: str, epoch_id: str) -> Dict[str, Any]:
        try:
            return self._epochs[(subject_id, epoch_id)]
        except KeyError:
            raise StorageUnavailableError(f"Epoch {epoch_id} not found for subject {subject_id}")

    def _write_epoch(self, epoch: Epoch) -> None:
        self._epochs[(epoch.subject_id, epoch.epoch_id)] = epoch.to_dict()

    def _read_seen(self, subject_id: str, epoch_id: str) -> Dict[str, datetime]:
        return dict(self._seen.get((subject_id, epoch_id), {}))

    def _write_seen(self, subject_id: str, epoch_id: str, seen: Dict[str, datetime]) -> None:
        self._seen[(subject_id, epoch_id)] = dict(seen)


"""
JSON file-backed top-picks store.

Layout under the root directory:

    <root>/<subject>/pointer.json          active epoch id + history
    <root>/<subject>/replace.lock          present while a replacement runs
    <root>/<subject>/epochs/<epoch>.json   one file per epoch
    <root>/<subject>/seen/<epoch>.json     seen marks per epoch

Every file is written to a temporary sibling and moved into place with
os.replace, so a reader sees either the old or the new content. A new epoch
is published by replacing pointer.json after the epoch file is complete
(write-then-flip-pointer).

Several store instances (or processes) may share one root. Replacements
exclude each other through replace.lock, created with O_CREAT | O_EXCL. A
lock left behind by a crashed process blocks replacement for that subject
until it is removed.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Iterator
from urllib.parse import quote

from ..errors import ConcurrentReplacementError, StorageUnavailableError
from .base import TopPicksStore, Epoch, EpochPointer

logger = logging.getLogger(__name__)

LOCK_FILE = "replace.lock"


def _safe(name: str) -> str:
    """
    One-to-one filesystem name for an identifier.

    Percent-encodes everything but letters, digits and "_-~", and encodes
    dots as well so "." and ".." never name a parent or current directory.

    Raises:
        ValueError: If name is empty
    """
    if not name:
        raise ValueError("Identifier must be non-empty")
    return quote(name, safe="").replace(".", "%2E")


class JsonFileTopPicksStore(TopPicksStore):
    """
    Store epochs as JSON files under a root directory.

    Attributes:
        root: Directory holding one sub-directory per subject
    """

    def __init__(self, root: str):
        super().__init__()
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create store directory {root}: {e}") from e
        logger.info(f"Initialized JsonFileTopPicksStore at {self.root}")

    def _subject_dir(self, subject_id: str) -> Path:
        return self.root / _safe(subject_id)

    def _pointer_path(self, subject_id: str) -> Path:
        return self._subject_dir(subject_id) / "pointer.json"

    def _epoch_path(self, subject_id: str, epoch_id: str) -> Path:
        return self._subject_dir(subject_id) / "epochs" / f"{_safe(epoch_id)}.json"

    def _seen_path(self, subject_id: str, epoch_id: str) -> Path:
        return self._subject_dir(subject_id) / "seen" / f"{_safe(epoch_id)}.json"

    @contextmanager
    def _replacement_guard(self, subject_id: str) -> Iterator[None]:
        """Hold the in-process lock and the subject's lock file."""
        with super()._replacement_guard(subject_id):
            lock_path = self._subject_dir(subject_id) / LOCK_FILE
            try:
                lock_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                with os.fdopen(fd, "w") as f:
                    f.write(str(os.getpid()))
            except FileExistsError:
                raise ConcurrentReplacementError(
                    subject_id, f"Replacement already in flight ({lock_path} exists)"
                )
            except OSError as e:
                raise StorageUnavailableError(f"Cannot lock {lock_path}: {e}") from e

            try:
                yield
            finally:
                try:
                    os.unlink(lock_path)
                except OSError as e:
                    logger.warning(f"Could not remove {lock_path}: {e}")

    def _write_json(self, path: Path, data: Any) -> None:
        """Write JSON to a temporary file, then move it into place."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageUnavailableError(f"Failed to write {path}: {e}") from e

    def _read_json(self, path: Path) -> Any:
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageUnavailableError(f"Failed to read {path}: {e}") from e

    def _read_pointer(self, subject_id: str) -> EpochPointer:
        path = self._pointer_path(subject_id)
        if not path.exists():
            return EpochPointer()
        return EpochPointer.from_dict(self._read_json(path))

    def _write_pointer(self, subject_id: str, pointer: EpochPointer) -> None:
        self._write_json(self._pointer_path(subject_id), pointer.to_dict())

    def _read_epoch(self, subject_id: str, epoch_id: str) -> Dict[str, Any]:
        return self._read_json(self._epoch_path(subject_id, epoch_id))

    def _write_epoch(self, epoch: Epoch) -> None:
        self._write_json(self._epoch_path(epoch.subject_id, epoch.epoch_id), epoch.to_dict())

    def _read_seen(self, subject_id: str, epoch_id: str) -> Dict[str, datetime]:
        path = self._seen_path(subject_id, epoch_id)
        if not path.exists():
            return {}
        try:
            return {cid: datetime.fromisoformat(ts) for cid, ts in self._read_json(path).items()}
        except (AttributeError, TypeError, ValueError) as e:
            raise StorageUnavailableError(f"Seen marks in {path} are unreadable: {e}") from e

    def _write_seen(self, subject_id: str, epoch_id: str, seen: Dict[str, datetime]) -> None:
        self._write_json(
            self._seen_path(subject_id, epoch_id),
            {cid: ts.isoformat() for cid, ts in seen.items()}
        )

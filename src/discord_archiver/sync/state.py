"""Checkpoint persistence layer.

Manages the JSON file that records, per channel or thread, the id of the
newest fully processed message.  The file holds a single top-level key::

    {"channels": {"<target id>": "<record id>", ...}}

Ids are stored as strings so large snowflakes never lose precision.

Key design choices:

* **Fail soft** -- ``load()`` returns an empty mapping for a missing or
  malformed file; a full backfill is always a safe starting point.
* **Monotonic** -- ``advance()`` refuses to move a checkpoint backwards or
  sideways, whatever the caller passes.
* **Atomic writes** -- the mapping is written to a temp file then moved
  into place with ``os.replace()`` so readers never see partial data.
* **Serialized** -- a single in-process lock covers the whole
  read-modify-write cycle, so advances for different targets running in
  worker threads cannot clobber each other.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from .models import id_sort_key

logger = logging.getLogger(__name__)

_ROOT_KEY = "channels"


class CheckpointStore:
    """Load, query, and advance per-target checkpoints.

    Args:
        path: Path to the checkpoint JSON file.  Parent directories are
            created on first write.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._reported_missing = False

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def load(self) -> dict[str, str]:
        """Load all checkpoints from disk.

        Returns:
            Mapping of target id to record id.  Empty when the file is
            missing, unreadable, or malformed.
        """
        with self._lock:
            return self._read()

    def get(self, target_id: str) -> str | None:
        """Return the checkpoint for *target_id*, or ``None`` if absent."""
        return self.load().get(target_id)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def advance(self, target_id: str, candidate_id: str) -> bool:
        """Move the checkpoint for *target_id* forward to *candidate_id*.

        The stored value is replaced only when nothing is stored yet or the
        stored id sorts strictly before *candidate_id*.

        Returns:
            ``True`` if the checkpoint was written, ``False`` if the stored
            value was already equal or newer.

        Raises:
            OSError: If the checkpoint file cannot be written.
        """
        with self._lock:
            checkpoints = self._read()
            current = checkpoints.get(target_id)
            if current is not None and id_sort_key(
                current
            ) >= id_sort_key(candidate_id):
                logger.debug(
                    "Checkpoint for %s stays at %s (candidate %s)",
                    target_id,
                    current,
                    candidate_id,
                )
                return False

            checkpoints[target_id] = str(candidate_id)
            self._write(checkpoints)
            logger.debug(
                "Checkpoint for %s advanced %s -> %s",
                target_id,
                current,
                candidate_id,
            )
            return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read(self) -> dict[str, str]:
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            if not self._reported_missing:
                logger.info(
                    "No checkpoint file at %s, starting from scratch",
                    self._path,
                )
                self._reported_missing = True
            return {}
        except (OSError, ValueError) as exc:
            logger.warning(
                "Checkpoint file %s is unreadable or malformed, "
                "starting from scratch: %s",
                self._path,
                exc,
            )
            return {}

        channels = data.get(_ROOT_KEY) if isinstance(data, dict) else None
        if not isinstance(channels, dict):
            logger.warning(
                "Checkpoint file %s has no '%s' mapping, "
                "starting from scratch",
                self._path,
                _ROOT_KEY,
            )
            return {}

        return {
            str(target_id): str(record_id)
            for target_id, record_id in channels.items()
            if record_id is not None
        }

    def _write(self, checkpoints: dict[str, str]) -> None:
        """Persist *checkpoints* atomically."""
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=str(directory), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({_ROOT_KEY: checkpoints}, fh, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

"""Tests for the checkpoint persistence layer.

Covers:
- load() fails soft on missing, malformed, or oddly shaped files
- advance() only ever moves a checkpoint forward
- numeric ids compare as numbers, not strings
- writes are atomic and leave no temp files behind
- a failed write raises and keeps the old value
- concurrent advances from worker threads keep every target's maximum
"""

from __future__ import annotations

import json
import os
import random
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from discord_archiver.sync.state import CheckpointStore

# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


class TestCheckpointLoad:
    """Tests for CheckpointStore.load() and get()."""

    def test_load_missing_file_returns_empty(self, tmp_path: Path):
        """A missing file is treated as no checkpoints at all."""
        store = CheckpointStore(tmp_path / "nope.json")
        assert store.load() == {}
        assert store.get("100") is None

    def test_missing_file_is_reported_once(self, tmp_path: Path):
        """Repeated lookups before the first write do not flood the log."""
        store = CheckpointStore(tmp_path / "nope.json")

        with patch("discord_archiver.sync.state.logger") as mock_logger:
            for _ in range(5):
                assert store.get("100") is None

        mock_logger.info.assert_called_once()
        assert "No checkpoint file" in mock_logger.info.call_args.args[0]

    def test_load_malformed_json_returns_empty(self, tmp_path: Path):
        """Garbage in the file is ignored rather than raised."""
        path = tmp_path / "checkpoints.json"
        path.write_text("{not json", encoding="utf-8")
        assert CheckpointStore(path).load() == {}

    def test_load_without_channels_key_returns_empty(self, tmp_path: Path):
        """A JSON object lacking the 'channels' mapping is ignored."""
        path = tmp_path / "checkpoints.json"
        path.write_text(json.dumps({"other": {"1": "2"}}), encoding="utf-8")
        assert CheckpointStore(path).load() == {}

    def test_load_non_dict_root_returns_empty(self, tmp_path: Path):
        path = tmp_path / "checkpoints.json"
        path.write_text(json.dumps(["100", "200"]), encoding="utf-8")
        assert CheckpointStore(path).load() == {}

    def test_load_reads_existing_checkpoints(self, tmp_path: Path):
        """Existing values are returned as strings."""
        path = tmp_path / "checkpoints.json"
        path.write_text(
            json.dumps({"channels": {"100": "1187", "200": 42}}),
            encoding="utf-8",
        )
        store = CheckpointStore(path)
        assert store.load() == {"100": "1187", "200": "42"}
        assert store.get("100") == "1187"


# ---------------------------------------------------------------------------
# Advance
# ---------------------------------------------------------------------------


class TestCheckpointAdvance:
    """Tests for CheckpointStore.advance()."""

    def test_first_advance_creates_file(self, tmp_path: Path):
        """The first advance writes the file, creating parent dirs."""
        path = tmp_path / "nested" / "checkpoints.json"
        store = CheckpointStore(path)

        assert store.advance("100", "1187") is True
        assert path.exists()
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == {"channels": {"100": "1187"}}

    def test_advance_moves_forward(self, tmp_path: Path):
        store = CheckpointStore(tmp_path / "cp.json")
        store.advance("100", "10")
        assert store.advance("100", "20") is True
        assert store.get("100") == "20"

    def test_advance_never_moves_backwards(self, tmp_path: Path):
        """An older candidate leaves the stored value alone."""
        store = CheckpointStore(tmp_path / "cp.json")
        store.advance("100", "20")
        assert store.advance("100", "10") is False
        assert store.get("100") == "20"

    def test_advance_same_value_is_noop(self, tmp_path: Path):
        store = CheckpointStore(tmp_path / "cp.json")
        store.advance("100", "20")
        assert store.advance("100", "20") is False

    def test_numeric_ordering_not_lexicographic(self, tmp_path: Path):
        """'9' sorts before '10' even though it is greater as a string."""
        store = CheckpointStore(tmp_path / "cp.json")
        store.advance("100", "9")
        assert store.advance("100", "10") is True
        assert store.advance("100", "9") is False
        assert store.get("100") == "10"

    def test_targets_are_independent(self, tmp_path: Path):
        """Advancing one target keeps every other target's value."""
        store = CheckpointStore(tmp_path / "cp.json")
        store.advance("100", "50")
        store.advance("200", "7")
        assert store.load() == {"100": "50", "200": "7"}

    def test_advance_leaves_no_temp_files(self, tmp_path: Path):
        store = CheckpointStore(tmp_path / "cp.json")
        store.advance("100", "1")
        store.advance("100", "2")
        assert sorted(p.name for p in tmp_path.iterdir()) == ["cp.json"]

    def test_failed_write_raises_and_keeps_old_value(self, tmp_path: Path):
        """A write failure surfaces as OSError; the file is untouched."""
        store = CheckpointStore(tmp_path / "cp.json")
        store.advance("100", "10")

        with patch(
            "discord_archiver.sync.state.os.replace",
            side_effect=OSError("disk full"),
        ):
            with pytest.raises(OSError, match="disk full"):
                store.advance("100", "20")

        assert store.get("100") == "10"
        assert [p for p in os.listdir(tmp_path) if p.endswith(".tmp")] == []

    def test_malformed_file_is_replaced_on_advance(self, tmp_path: Path):
        path = tmp_path / "cp.json"
        path.write_text("garbage", encoding="utf-8")
        store = CheckpointStore(path)

        assert store.advance("100", "5") is True
        assert store.load() == {"100": "5"}

    def test_concurrent_advances_on_distinct_targets(self, tmp_path: Path):
        """Worker threads advancing different targets lose no update."""
        store = CheckpointStore(tmp_path / "cp.json")
        targets = {str(100 + n): 40 + n for n in range(8)}
        barrier = threading.Barrier(len(targets))
        errors = []

        def worker(target_id: str, highest: int) -> None:
            ids = [str(i) for i in range(1, highest + 1)]
            random.Random(target_id).shuffle(ids)
            try:
                barrier.wait()
                for record_id in ids:
                    store.advance(target_id, record_id)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [
            threading.Thread(target=worker, args=(target_id, highest))
            for target_id, highest in targets.items()
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert store.load() == {
            target_id: str(highest) for target_id, highest in targets.items()
        }

"""Per-target Markdown archive with idempotent block mutations.

An archive file is an optional header followed by blocks.  A block starts at
its start-marker line and runs up to, but not including, the next
start-marker line or the end of the file.  Marker-looking lines inside a
fenced message body are not block starts.

Every mutation reads the whole file once into a ``ParsedArchive`` (preamble
plus an ordered list of ``Block`` objects), edits that list, and writes the
text back once via an atomic replace.  Untouched blocks are carried through
as the exact text that was read, so an update or delete never changes a
neighbouring block.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from discord_archiver.file_handler import read_file_with_encoding, write_file

from .formatter import RecordFormatter
from .models import ArchiveAction, Record, ReplyState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Block-span model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Block:
    """The text of one archived record, start marker included."""

    record_id: str
    text: str


@dataclass(frozen=True)
class BlockSpan:
    """Character offsets of a block within the archive text."""

    record_id: str
    start: int
    end: int


@dataclass
class ParsedArchive:
    """An archive file split into its preamble and ordered blocks."""

    preamble: str = ""
    blocks: list[Block] = field(default_factory=list)

    def index_of(self, record_id: str) -> int | None:
        for index, block in enumerate(self.blocks):
            if block.record_id == record_id:
                return index
        return None

    def record_ids(self) -> list[str]:
        return [block.record_id for block in self.blocks]

    def spans(self) -> list[BlockSpan]:
        """Return the ``[start, end)`` offsets of every block."""
        spans = []
        offset = len(self.preamble)
        for block in self.blocks:
            end = offset + len(block.text)
            spans.append(BlockSpan(block.record_id, offset, end))
            offset = end
        return spans

    def to_text(self) -> str:
        return self.preamble + "".join(block.text for block in self.blocks)


def parse_archive(text: str, formatter: RecordFormatter) -> ParsedArchive:
    """Split archive *text* into preamble and blocks.

    ``parse_archive(text, f).to_text() == text`` holds for any input.
    """
    preamble: list[str] = []
    blocks: list[Block] = []
    current_id: str | None = None
    current: list[str] = []
    open_fence = 0

    def _flush() -> None:
        if current_id is not None:
            blocks.append(Block(current_id, "".join(current)))

    for line in text.splitlines(keepends=True):
        target = current if current_id is not None else preamble

        if open_fence:
            if formatter.fence_length(line) >= open_fence:
                open_fence = 0
            target.append(line)
            continue

        record_id = formatter.parse_marker(line)
        if record_id is not None:
            _flush()
            current_id = record_id
            current = [line]
            continue

        open_fence = formatter.fence_length(line)
        target.append(line)

    _flush()
    return ParsedArchive(preamble="".join(preamble), blocks=blocks)


# ---------------------------------------------------------------------------
# Archive document
# ---------------------------------------------------------------------------


class ArchiveDocument:
    """One Markdown archive file for one target.

    Args:
        path: Location of the archive file.
        formatter: Renders blocks and recognises markers.
        title: Header title, written once when the file is created.
        permalink: Optional URL written under the title.
        clock: Returns "now"; used to stamp edits that carry no edit time.
    """

    def __init__(
        self,
        path: Path,
        formatter: RecordFormatter,
        title: str,
        permalink: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.path = Path(path)
        self.formatter = formatter
        self.title = title
        self.permalink = permalink
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> ParsedArchive | None:
        """Parse the file, or return ``None`` if it does not exist."""
        with self._lock:
            return self._load()

    def contains(self, record_id: str) -> bool:
        parsed = self.read()
        return parsed is not None and parsed.index_of(record_id) is not None

    def block_ids(self) -> list[str]:
        parsed = self.read()
        return parsed.record_ids() if parsed is not None else []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, record: Record, reply_state: ReplyState) -> ArchiveAction:
        """Append a block for *record* unless one already exists.

        Returns:
            ``INSERT`` if written, ``SKIP`` for a duplicate.
        """
        with self._lock:
            return self._insert(self._load(), record, reply_state)

    def update(self, record: Record, reply_state: ReplyState) -> ArchiveAction:
        """Replace the block for *record* with a fresh rendering.

        A record that was never archived is inserted instead.  An edit
        without an edit time is stamped with the current time so the new
        block is distinguishable from the original.

        Returns:
            ``UPDATE`` if the block changed, ``INSERT`` if it was missing,
            ``SKIP`` if the rendering is identical to the stored block.
        """
        with self._lock:
            parsed = self._load()
            index = parsed.index_of(record.id) if parsed is not None else None
            if parsed is None or index is None:
                logger.info(
                    "Message %s not in %s, adding it", record.id, self.path
                )
                return self._insert(parsed, record, reply_state)

            if record.edited_at is None:
                record = record.model_copy(
                    update={"edited_at": self._clock()}
                )

            rendered = self.formatter.render(record, reply_state)
            if parsed.blocks[index].text == rendered:
                logger.debug(
                    "Message %s unchanged in %s", record.id, self.path
                )
                return ArchiveAction.SKIP

            parsed.blocks[index] = Block(record.id, rendered)
            self._save(parsed)
            logger.info("Updated message %s in %s", record.id, self.path)
            return ArchiveAction.UPDATE

    def delete(self, record_id: str) -> ArchiveAction:
        """Remove the block for *record_id* and repair replies to it.

        Link-form replies to *record_id* anywhere in the file are rewritten
        to the deleted placeholder, even when the block itself was never
        archived.

        Returns:
            ``DELETE`` if a block was removed, ``SKIP`` otherwise.
        """
        with self._lock:
            parsed = self._load()
            if parsed is None:
                logger.info(
                    "Message %s not found, %s does not exist",
                    record_id,
                    self.path,
                )
                return ArchiveAction.SKIP

            kept = [b for b in parsed.blocks if b.record_id != record_id]
            removed = len(parsed.blocks) - len(kept)
            parsed.blocks = kept
            repaired = self._repair(parsed, record_id)

            if removed or repaired:
                self._save(parsed)

            if not removed:
                logger.info(
                    "Message %s not found in %s", record_id, self.path
                )
                return ArchiveAction.SKIP

            logger.info(
                "Removed message %s from %s (%d replies marked deleted)",
                record_id,
                self.path,
                repaired,
            )
            return ArchiveAction.DELETE

    def repair_references_to(self, record_id: str) -> int:
        """Mark every link-form reply to *record_id* as deleted.

        Returns:
            Number of blocks rewritten.
        """
        with self._lock:
            parsed = self._load()
            if parsed is None:
                return 0
            repaired = self._repair(parsed, record_id)
            if repaired:
                self._save(parsed)
                logger.info(
                    "Marked %d replies to %s as deleted in %s",
                    repaired,
                    record_id,
                    self.path,
                )
            return repaired

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _load(self) -> ParsedArchive | None:
        if not self.path.exists():
            return None
        content, encoding = read_file_with_encoding(self.path)
        if encoding != "utf-8":
            logger.warning(
                "%s was read as %s, it will be rewritten as utf-8",
                self.path,
                encoding,
            )
        return parse_archive(content, self.formatter)

    def _save(self, parsed: ParsedArchive) -> None:
        write_file(self.path, parsed.to_text())

    def _insert(
        self,
        parsed: ParsedArchive | None,
        record: Record,
        reply_state: ReplyState,
    ) -> ArchiveAction:
        if parsed is not None and parsed.index_of(record.id) is not None:
            logger.info(
                "Skipping duplicate message %s in %s", record.id, self.path
            )
            return ArchiveAction.SKIP

        if parsed is None or not parsed.to_text().strip():
            parsed = ParsedArchive(
                preamble=self.formatter.render_header(
                    self.title, self.permalink
                )
            )
        elif not parsed.to_text().endswith("\n"):
            # Hand-edited file without a final newline
            if parsed.blocks:
                last = parsed.blocks[-1]
                parsed.blocks[-1] = Block(last.record_id, last.text + "\n")
            else:
                parsed.preamble += "\n"

        parsed.blocks.append(
            Block(record.id, self.formatter.render(record, reply_state))
        )
        self._save(parsed)
        logger.debug("Wrote message %s to %s", record.id, self.path)
        return ArchiveAction.INSERT

    def _repair(self, parsed: ParsedArchive, record_id: str) -> int:
        repaired = 0
        for index, block in enumerate(parsed.blocks):
            text = self.formatter.mark_reply_deleted(block.text, record_id)
            if text != block.text:
                parsed.blocks[index] = Block(block.record_id, text)
                repaired += 1
        return repaired

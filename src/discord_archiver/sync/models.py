"""Pydantic models for the archive sync engine.

Defines the core data contracts used across all sync modules:

- ``Target``: an archivable channel or thread.
- ``Author`` / ``Attachment`` / ``Record``: one archivable message.
- ``ReplyKind`` / ``ReplyState``: what a record's reply reference points at.
- ``ArchiveAction``: outcome of a single document mutation.
- ``RecordResult``: outcome of processing one record.
- ``BackfillReport``: aggregate results for one backfill run.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


def id_sort_key(record_id: str) -> tuple[int, int, str]:
    """Return the canonical ordering key for a record or target id.

    Snowflake ids are numeric strings of varying width, so they are compared
    as integers (``"9" < "10"``).  Non-numeric ids fall back to string
    comparison and always sort after numeric ones.
    """
    if record_id.isdigit():
        return (0, int(record_id), "")
    return (1, 0, record_id)


def max_id(*ids: str | None) -> str | None:
    """Return the greatest id under ``id_sort_key``, ignoring ``None``."""
    present = [i for i in ids if i is not None]
    if not present:
        return None
    return max(present, key=id_sort_key)


class Target(BaseModel):
    """An archivable unit: a text channel, forum channel, or thread.

    Attributes:
        id: Stable identifier, monotonic with creation time.
        display_name: Human-readable name used in the archive header.
        parent_id: Parent channel id for threads, ``None`` otherwise.
        labels: Resolved tag names (threads only).
        permalink: Optional URL written into the archive header.
        is_container: True for forum channels, whose content lives only
            in threads.
    """

    id: str
    display_name: str
    parent_id: str | None = None
    labels: tuple[str, ...] = ()
    permalink: str | None = None
    is_container: bool = False

    model_config = {"frozen": True}


class Author(BaseModel):
    """Identity of a record's author."""

    display_name: str
    handle: str
    id: str

    model_config = {"frozen": True}


class Attachment(BaseModel):
    """A file attached to a record."""

    name: str
    url: str

    model_config = {"frozen": True}


class Record(BaseModel):
    """One archivable message.

    Attributes:
        id: Record id; numeric ordering equals creation-time ordering.
        target_id: Id of the channel or thread containing the record.
        author: Author identity.
        created_at: Creation time (timezone-aware).
        edited_at: Last edit time, ``None`` if never edited.
        body: Raw message text.
        attachments: Ordered attachments.
        reply_to_id: Id of the referenced record, if this is a reply.
        reply_to_target_id: Target holding the referenced record.  Defaults
            to ``target_id`` when unset.
    """

    id: str
    target_id: str
    author: Author
    created_at: datetime
    edited_at: datetime | None = None
    body: str = ""
    attachments: tuple[Attachment, ...] = ()
    reply_to_id: str | None = None
    reply_to_target_id: str | None = None

    model_config = {"frozen": True}

    @property
    def reply_target(self) -> str:
        """Target id to look up the replied-to record in."""
        return self.reply_to_target_id or self.target_id


class ReplyKind(str, Enum):
    """Possible states of a record's reply reference."""

    NONE = "none"
    LINKED = "linked"
    DELETED = "deleted"


class ReplyState(BaseModel):
    """Reply reference state supplied to the formatter by the caller."""

    kind: ReplyKind = ReplyKind.NONE
    record_id: str | None = None

    model_config = {"frozen": True}

    @classmethod
    def none(cls) -> ReplyState:
        return cls()

    @classmethod
    def linked(cls, record_id: str) -> ReplyState:
        return cls(kind=ReplyKind.LINKED, record_id=record_id)

    @classmethod
    def deleted(cls, record_id: str) -> ReplyState:
        return cls(kind=ReplyKind.DELETED, record_id=record_id)


class TargetState(str, Enum):
    """Lifecycle of a target inside the sync engine."""

    UNSEEN = "unseen"
    BACKFILLING = "backfilling"
    LIVE = "live"


class ArchiveAction(str, Enum):
    """Outcome of a single archive document mutation."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class RecordResult(BaseModel):
    """Result of processing one record during a backfill.

    Attributes:
        record_id: The record id.
        action: Document action that was performed.
        success: Whether processing succeeded.
        error: Error message if processing failed.
    """

    record_id: str
    action: ArchiveAction
    success: bool
    error: str | None = None

    model_config = {"frozen": True}


class BackfillReport(BaseModel):
    """Aggregate report for one backfill run of one target.

    Attributes:
        target_id: The target that was backfilled.
        checkpoint_before: Stored checkpoint when the run started.
        checkpoint_after: Stored checkpoint when the run finished.
        fetched: Number of records returned by the source.
        results: Per-record results, oldest first.
        error: Fetch-level error, if the page could not be fetched.
        started_at: ISO 8601 timestamp when the run started.
        completed_at: ISO 8601 timestamp when the run completed.
    """

    target_id: str
    checkpoint_before: str | None = None
    checkpoint_after: str | None = None
    fetched: int = 0
    results: list[RecordResult] = Field(default_factory=list)
    error: str | None = None
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def inserted(self) -> list[RecordResult]:
        """Results where a block was written."""
        return [
            r
            for r in self.results
            if r.success and r.action == ArchiveAction.INSERT
        ]

    @property
    def skipped(self) -> list[RecordResult]:
        """Results where the record was already archived."""
        return [
            r
            for r in self.results
            if r.success and r.action == ArchiveAction.SKIP
        ]

    @property
    def errors(self) -> list[RecordResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    @property
    def ok(self) -> bool:
        """True when the page was fetched and every record succeeded."""
        return self.error is None and not self.errors

    def summary(self) -> str:
        """Format a one-line human-readable summary of the run."""
        if self.error is not None:
            return (
                f"Backfill of {self.target_id} failed: {self.error}"
            )
        return (
            f"Backfill of {self.target_id}: "
            f"{len(self.inserted)} inserted, "
            f"{len(self.skipped)} skipped, "
            f"{len(self.errors)} errors "
            f"(checkpoint {self.checkpoint_before or 'none'} -> "
            f"{self.checkpoint_after or 'none'})"
        )

"""Contract between the sync engine and the upstream message source.

The engine never talks to Discord directly; it calls an ``EventSource``.
``discord_archiver.gateway.DiscordEventSource`` is the production
implementation, tests use an in-memory one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from .models import Record, Target


class RecordNotFound(Exception):
    """Raised when a record (or its target) does not exist upstream."""

    def __init__(self, target_id: str, record_id: str) -> None:
        super().__init__(
            f"Message {record_id} not found in channel {target_id}"
        )
        self.target_id = target_id
        self.record_id = record_id


@dataclass
class SubTargetListing:
    """Threads under a channel, split by archival state."""

    active: list[Target] = field(default_factory=list)
    archived: list[Target] = field(default_factory=list)


class EventSource(Protocol):
    """Upstream operations the sync engine relies on."""

    async def fetch_target(self, target_id: str) -> Target:
        """Return the channel or thread *target_id*."""
        ...

    async def fetch_records(
        self, target: Target, after_id: str | None, limit: int
    ) -> list[Record]:
        """Return one page of records, newest first.

        With *after_id* set, the page holds the *limit* records immediately
        following *after_id* (the oldest ones newer than it), so advancing a
        checkpoint to the page maximum never skips a record.  With
        *after_id* ``None`` the newest *limit* records are returned.
        """
        ...

    async def fetch_record(self, target_id: str, record_id: str) -> Record:
        """Return one record.

        Raises:
            RecordNotFound: If the record does not exist.
        """
        ...

    async def enumerate_sub_targets(self, parent: Target) -> SubTargetListing:
        """Return the active and archived threads of *parent*."""
        ...

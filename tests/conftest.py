"""Shared pytest fixtures for discord-archiver tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from discord_archiver.sync.models import Attachment, Author, Record, Target
from discord_archiver.sync.source import RecordNotFound, SubTargetListing

BASE_TIME = datetime(2024, 5, 1, 9, 30, 0, 125000, tzinfo=timezone.utc)


def build_record(
    record_id: str,
    target_id: str = "100",
    body: str | None = None,
    reply_to_id: str | None = None,
    edited_at: datetime | None = None,
    attachments: tuple[Attachment, ...] = (),
) -> Record:
    """Build a Record whose creation time grows with its numeric id."""
    return Record(
        id=record_id,
        target_id=target_id,
        author=Author(display_name="Ada", handle="ada", id="4242"),
        created_at=BASE_TIME + timedelta(seconds=int(record_id)),
        edited_at=edited_at,
        body=f"message {record_id}" if body is None else body,
        attachments=attachments,
        reply_to_id=reply_to_id,
    )


class FakeEventSource:
    """In-memory ``EventSource`` for testing.

    Stores records per target and mimics the upstream paging contract:
    newest first, ``after_id`` selecting the oldest records newer than it.
    """

    def __init__(self) -> None:
        self.targets: dict[str, Target] = {}
        self.records: dict[str, dict[str, Record]] = {}
        self.active: dict[str, list[str]] = {}
        self.archived: dict[str, list[str]] = {}
        self.fetch_calls: list[tuple[str, str | None, int]] = []
        self.fail_fetch_records: set[str] = set()
        self.slow_records: set[str] = set()

    def add_target(self, target: Target, archived: bool = False) -> Target:
        self.targets[target.id] = target
        self.records.setdefault(target.id, {})
        if target.parent_id:
            bucket = self.archived if archived else self.active
            bucket.setdefault(target.parent_id, []).append(target.id)
        return target

    def add_records(self, *records: Record) -> None:
        for record in records:
            self.records.setdefault(record.target_id, {})[record.id] = record

    def remove_record(self, target_id: str, record_id: str) -> None:
        self.records.get(target_id, {}).pop(record_id, None)

    async def fetch_target(self, target_id: str) -> Target:
        if target_id not in self.targets:
            raise LookupError(f"Unknown channel {target_id}")
        return self.targets[target_id]

    async def fetch_records(
        self, target: Target, after_id: str | None, limit: int
    ) -> list[Record]:
        self.fetch_calls.append((target.id, after_id, limit))
        if target.id in self.fail_fetch_records:
            raise ConnectionError("gateway unavailable")
        ordered = sorted(
            self.records.get(target.id, {}).values(),
            key=lambda r: int(r.id),
        )
        if after_id is None:
            page = ordered[-limit:]
        else:
            page = [r for r in ordered if int(r.id) > int(after_id)][:limit]
        return list(reversed(page))

    async def fetch_record(self, target_id: str, record_id: str) -> Record:
        if record_id in self.slow_records:
            await asyncio.sleep(10)
        record = self.records.get(target_id, {}).get(record_id)
        if record is None:
            raise RecordNotFound(target_id, record_id)
        return record

    async def enumerate_sub_targets(self, parent: Target) -> SubTargetListing:
        return SubTargetListing(
            active=[self.targets[i] for i in self.active.get(parent.id, [])],
            archived=[
                self.targets[i] for i in self.archived.get(parent.id, [])
            ],
        )


@pytest.fixture
def make_record():
    """Factory fixture for ``Record`` objects."""
    return build_record


@pytest.fixture
def fake_source() -> FakeEventSource:
    return FakeEventSource()


@pytest.fixture
def archive_dir(tmp_path: Path) -> Path:
    path = tmp_path / "archive"
    path.mkdir()
    return path

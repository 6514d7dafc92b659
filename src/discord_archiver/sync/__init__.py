"""Incremental archive sync engine.

Public API for mirroring a live Discord channel (or forum and its threads)
into one Markdown file per channel/thread.

Architecture
------------
The archive file is the source of truth for what has been archived: every
insert checks it for the message's block first, so replays are harmless.
The checkpoint file only records how far each target has been fetched, so a
restart re-fetches one bounded page instead of the whole history.

Modules:

- ``engine``     -- ``SyncEngine``: backfill and live event reconciliation.
- ``state``      -- ``CheckpointStore``: monotonic per-target checkpoints.
- ``document``   -- ``ArchiveDocument``: idempotent block insert, update,
  delete and reply-reference repair over an explicit block-span model.
- ``formatter``  -- ``RecordFormatter``: pure record -> Markdown block.
- ``filters``    -- ``TargetFilter``: forum tag scope rules.
- ``source``     -- ``EventSource`` protocol and ``RecordNotFound``.
- ``models``     -- ``Target``, ``Record``, ``ReplyState``,
  ``ArchiveAction``, ``BackfillReport`` and friends.

Usage example
-------------
::

    from pathlib import Path
    from discord_archiver.sync import CheckpointStore, SyncEngine

    engine = SyncEngine(
        source=event_source,         # any EventSource implementation
        root_target_id="1234567890",
        checkpoints=CheckpointStore(Path("archive/checkpoints.json")),
        output_root=Path("archive"),
    )

    reports = await engine.start()
    for report in reports:
        print(report.summary())

    # then feed gateway events:
    await engine.on_create(record)
"""

from .document import ArchiveDocument, Block, BlockSpan, parse_archive
from .engine import SyncEngine
from .filters import TargetFilter, is_in_scope
from .formatter import RecordFormatter
from .models import (
    ArchiveAction,
    Attachment,
    Author,
    BackfillReport,
    Record,
    RecordResult,
    ReplyKind,
    ReplyState,
    Target,
    TargetState,
    id_sort_key,
)
from .source import EventSource, RecordNotFound, SubTargetListing
from .state import CheckpointStore

__all__ = [
    "ArchiveAction",
    "ArchiveDocument",
    "Attachment",
    "Author",
    "BackfillReport",
    "Block",
    "BlockSpan",
    "CheckpointStore",
    "EventSource",
    "Record",
    "RecordFormatter",
    "RecordNotFound",
    "RecordResult",
    "ReplyKind",
    "ReplyState",
    "SubTargetListing",
    "SyncEngine",
    "Target",
    "TargetFilter",
    "TargetState",
    "id_sort_key",
    "is_in_scope",
    "parse_archive",
]

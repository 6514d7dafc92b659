"""Sync engine that mirrors a channel's messages into Markdown archives.

The ``SyncEngine`` ties together the event source, checkpoint store, target
filter and per-target archive documents.  It runs in two modes:

1. **Backfill** -- on startup (and whenever a target needs catching up) it
   fetches one bounded page of messages newer than the target's checkpoint,
   archives them oldest first, then advances the checkpoint once for the
   whole page.
2. **Live** -- gateway events (create, edit, delete, thread tag changes)
   are reconciled into the archive as they arrive.

Each target moves through ``UNSEEN -> BACKFILLING -> LIVE``.

Serialization: one event is processed completely, including any catch-up
backfill it triggers, before the next event starts.  A per-target lock keeps
a target's backfill and live handling apart while startup backfills of
different threads run side by side.  File and checkpoint I/O happen in
worker threads, each guarded by its own lock.

Error handling is per-record: a failure is logged with the target id,
record id and operation, and processing carries on.  The checkpoint still
moves past a record that failed; the record is kept aside and retried on the
target's next backfills, up to ``MAX_RECORD_ATTEMPTS`` tries.  The archive
file, not the checkpoint, decides whether a message is already archived,
so replaying a page after a crash only produces skipped duplicates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from discord_archiver.core.async_utils import gather_limited, run_sync
from discord_archiver.file_handler import archive_path
from discord_archiver.sync.document import ArchiveDocument
from discord_archiver.sync.filters import TargetFilter
from discord_archiver.sync.formatter import RecordFormatter
from discord_archiver.sync.models import (
    ArchiveAction,
    BackfillReport,
    Record,
    RecordResult,
    ReplyKind,
    ReplyState,
    Target,
    TargetState,
    id_sort_key,
    max_id,
)
from discord_archiver.sync.source import EventSource, RecordNotFound
from discord_archiver.sync.state import CheckpointStore

if TYPE_CHECKING:
    from discord_archiver.config import Config
    from discord_archiver.config_schema import FormatterConfig

logger = logging.getLogger(__name__)

# Attempts (the first included) before a record that keeps failing is dropped.
MAX_RECORD_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Keep the archive of one channel (and its threads) up to date.

    Args:
        source: Upstream message source.
        root_target_id: The text or forum channel being archived.
        checkpoints: Per-target checkpoint store.
        output_root: Directory receiving one Markdown file per target.
        formatter: Block renderer.  Defaults to ``RecordFormatter()``.
        target_filter: Thread tag filter.  Defaults to no filtering.
        max_fetch_size: Records fetched per backfill page.
        reply_timeout: Seconds to wait when checking a replied-to message.
        max_parallel_backfills: Threads backfilled concurrently by
            ``start()``.
        clock: Returns "now"; used for edit stamps and report timestamps.
    """

    def __init__(
        self,
        source: EventSource,
        root_target_id: str,
        checkpoints: CheckpointStore,
        output_root: Path,
        formatter: RecordFormatter | None = None,
        target_filter: TargetFilter | None = None,
        max_fetch_size: int = 100,
        reply_timeout: float = 5.0,
        max_parallel_backfills: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.source = source
        self.root_target_id = str(root_target_id)
        self.checkpoints = checkpoints
        self.output_root = Path(output_root)
        self.formatter = formatter or RecordFormatter()
        self.target_filter = target_filter or TargetFilter()
        self.max_fetch_size = max_fetch_size
        self.reply_timeout = reply_timeout
        self.max_parallel_backfills = max_parallel_backfills
        self._clock = clock

        self.target_states: dict[str, TargetState] = {}
        self._targets: dict[str, Target] = {}
        self._documents: dict[str, ArchiveDocument] = {}
        self._target_locks: dict[str, asyncio.Lock] = {}
        self._event_lock = asyncio.Lock()
        self._pending_checkpoints: dict[str, str] = {}
        # target id -> record id -> (record, failed attempts)
        self._failed_records: dict[str, dict[str, tuple[Record, int]]] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        source: EventSource,
        formatter_config: FormatterConfig | None = None,
    ) -> SyncEngine:
        """Build an engine from the runtime ``Config``."""
        return cls(
            source=source,
            root_target_id=config.channel_id,
            checkpoints=CheckpointStore(Path(config.checkpoint_path)),
            output_root=Path(config.output_root),
            formatter=RecordFormatter(formatter_config),
            target_filter=TargetFilter(config.filter_tags),
            max_fetch_size=config.max_fetch_size,
            reply_timeout=config.reply_timeout,
            max_parallel_backfills=config.max_parallel_backfills,
        )

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> list[BackfillReport]:
        """Run the startup backfill.

        Forum channels have every in-scope thread (active and archived)
        backfilled; text channels are backfilled directly.

        Raises:
            Exception: Whatever the source raises when the root channel or
                its thread list cannot be fetched.
        """
        root = await self.source.fetch_target(self.root_target_id)
        self._register(root)
        checkpoints = await run_sync(self.checkpoints.load)
        logger.info(
            "Starting bulk export of %s with %d existing checkpoints",
            root.id,
            len(checkpoints),
        )

        if root.is_container:
            threads = await self.target_filter.enumerate_in_scope(
                self.source, root
            )
            for thread in threads:
                self._register(thread)
            reports = await gather_limited(
                [self._backfill_factory(t) for t in threads],
                self.max_parallel_backfills,
            )
        else:
            reports = [await self.backfill(root)]

        for report in reports:
            logger.info(report.summary())
        logger.info("Bulk export completed")
        return reports

    def _backfill_factory(self, target: Target):
        async def _run() -> BackfillReport:
            return await self.backfill(target)

        return _run

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill(self, target: Target) -> BackfillReport:
        """Archive one page of records newer than *target*'s checkpoint."""
        async with self._lock_for(target.id):
            return await self._backfill(target)

    async def _backfill(self, target: Target) -> BackfillReport:
        """Backfill *target*; the caller holds the target lock."""
        self._register(target)
        self.target_states[target.id] = TargetState.BACKFILLING
        started_at = self._clock().isoformat()

        checkpoint = await run_sync(self.checkpoints.get, target.id)
        logger.info(
            "Exporting %s \"%s\" (checkpoint: %s)",
            target.id,
            target.display_name,
            checkpoint or "none",
        )

        try:
            fetched = await self.source.fetch_records(
                target, checkpoint, self.max_fetch_size
            )
        except Exception as exc:
            logger.error(
                "Failed to fetch messages for %s after %s: %s",
                target.id,
                checkpoint,
                exc,
            )
            self.target_states[target.id] = TargetState.LIVE
            return BackfillReport(
                target_id=target.id,
                checkpoint_before=checkpoint,
                checkpoint_after=checkpoint,
                error=str(exc),
                started_at=started_at,
                completed_at=self._clock().isoformat(),
            )

        document = self._document_for(target)
        page_ids = {record.id for record in fetched}
        results = await self._retry_failed(target, document, page_ids)
        latest: str | None = None

        # Upstream pages are newest first; archive in creation order.
        for record in sorted(fetched, key=lambda r: id_sort_key(r.id)):
            if checkpoint is not None and id_sort_key(
                record.id
            ) <= id_sort_key(checkpoint):
                continue
            latest = max_id(latest, record.id)
            results.append(await self._archive_record(target, document, record))

        if latest is not None:
            await self._advance(target.id, latest)

        self.target_states[target.id] = TargetState.LIVE
        checkpoint_after = await run_sync(self.checkpoints.get, target.id)
        report = BackfillReport(
            target_id=target.id,
            checkpoint_before=checkpoint,
            checkpoint_after=checkpoint_after,
            fetched=len(fetched),
            results=results,
            started_at=started_at,
            completed_at=self._clock().isoformat(),
        )
        logger.debug(report.summary())
        return report

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------

    async def on_create(
        self, record: Record, target: Target | None = None
    ) -> ArchiveAction | BackfillReport | None:
        """Handle a newly created record.

        A record newer than the target's checkpoint (or in a target with no
        checkpoint yet) triggers a catch-up backfill, which picks up the
        record together with anything missed while disconnected or out of
        scope.  Older records are inserted directly.

        Returns:
            The catch-up ``BackfillReport``, the direct ``ArchiveAction``,
            or ``None`` if the record is out of scope or processing failed.
        """
        async with self._event_lock:
            resolved = await self._resolve_target(record.target_id, target)
            if resolved is None or not self.is_archived(resolved):
                return None

            async with self._lock_for(resolved.id):
                try:
                    return await self._handle_create(resolved, record)
                except Exception as exc:
                    logger.error(
                        "Failed to handle new message %s in %s: %s",
                        record.id,
                        resolved.id,
                        exc,
                    )
                    return None

    async def _handle_create(
        self, target: Target, record: Record
    ) -> ArchiveAction | BackfillReport:
        checkpoint = await run_sync(self.checkpoints.get, target.id)

        if checkpoint is None or id_sort_key(record.id) > id_sort_key(
            checkpoint
        ):
            if checkpoint is None:
                logger.info(
                    "New channel or thread detected: %s, fetching history",
                    target.id,
                )
            else:
                logger.info(
                    "Catching up on missed messages for %s", target.id
                )
            report = await self._backfill(target)
            if report.error is not None:
                # Archive what we have; the checkpoint stays put so the
                # next catch-up refetches the gap.
                logger.warning(
                    "Catch-up for %s failed, archiving message %s directly",
                    target.id,
                    record.id,
                )
                document = self._document_for(target)
                await self._insert(document, record)
                await self._retry_pending(target.id)
            elif not any(r.record_id == record.id for r in report.results):
                logger.info(
                    "Message %s in %s is beyond the catch-up page, "
                    "a later catch-up will archive it",
                    record.id,
                    target.id,
                )
            return report

        document = self._document_for(target)
        action = await self._insert(document, record)
        await self._advance(target.id, record.id)
        return action

    async def on_update(
        self,
        old: Record | None,
        new: Record,
        target: Target | None = None,
    ) -> ArchiveAction | None:
        """Handle an edited record by re-rendering its block."""
        async with self._event_lock:
            resolved = await self._resolve_target(new.target_id, target)
            if resolved is None or not self.is_archived(resolved):
                return None

            logger.info("Message %s updated in %s", new.id, resolved.id)
            async with self._lock_for(resolved.id):
                try:
                    document = self._document_for(resolved)
                    reply_state = await self._resolve_reply_state(new)
                    action = await run_sync(
                        document.update, new, reply_state
                    )
                    await self._after_reply_resolution(document, reply_state)
                    await self._retry_pending(resolved.id)
                    return action
                except Exception as exc:
                    logger.error(
                        "Failed to update message %s in %s: %s",
                        new.id,
                        resolved.id,
                        exc,
                    )
                    return None

    async def on_delete(
        self, target_id: str, record_id: str
    ) -> ArchiveAction | None:
        """Handle a deleted record by removing its block."""
        async with self._event_lock:
            resolved = await self._resolve_target(target_id, None)
            if resolved is None or not self.is_archived(resolved):
                return None

            logger.info("Message %s deleted in %s", record_id, resolved.id)
            async with self._lock_for(resolved.id):
                try:
                    document = self._document_for(resolved)
                    action = await run_sync(document.delete, record_id)
                    await self._retry_pending(resolved.id)
                    return action
                except Exception as exc:
                    logger.error(
                        "Failed to delete message %s in %s: %s",
                        record_id,
                        resolved.id,
                        exc,
                    )
                    return None

    async def on_sub_target_changed(
        self, old: Target, new: Target
    ) -> BackfillReport | None:
        """Handle a thread whose tags (or other attributes) changed.

        A thread entering scope is backfilled from its existing checkpoint.
        A thread leaving scope keeps everything already archived.
        """
        async with self._event_lock:
            if new.parent_id != self.root_target_id:
                return None

            was_in_scope = self.target_filter.is_in_scope(old)
            now_in_scope = self.target_filter.is_in_scope(new)
            self._register(new)

            if was_in_scope == now_in_scope:
                return None

            if not now_in_scope:
                logger.info(
                    "Thread %s left the tag filter, archived content is kept",
                    new.id,
                )
                return None

            logger.info(
                "Thread %s now matches the tag filter, catching up", new.id
            )
            async with self._lock_for(new.id):
                try:
                    return await self._backfill(new)
                except Exception as exc:
                    logger.error(
                        "Failed to backfill reclassified thread %s: %s",
                        new.id,
                        exc,
                    )
                    return None

    # ------------------------------------------------------------------
    # Scope
    # ------------------------------------------------------------------

    def is_archived(self, target: Target) -> bool:
        """Return ``True`` if events in *target* belong in the archive."""
        if target.id == self.root_target_id:
            return True
        return (
            target.parent_id == self.root_target_id
            and self.target_filter.is_in_scope(target)
        )

    def is_tracked(self, target_id: str) -> bool:
        """Return ``True`` for the root or an already known in-scope thread.

        Unlike ``is_archived`` this needs no ``Target``, so callers can drop
        events for unrelated channels before any upstream lookup.
        """
        target_id = str(target_id)
        if target_id == self.root_target_id:
            return True
        target = self._targets.get(target_id)
        return target is not None and self.is_archived(target)

    def state_of(self, target_id: str) -> TargetState:
        return self.target_states.get(target_id, TargetState.UNSEEN)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _insert(
        self, document: ArchiveDocument, record: Record
    ) -> ArchiveAction:
        reply_state = await self._resolve_reply_state(record)
        action = await run_sync(document.insert, record, reply_state)
        await self._after_reply_resolution(document, reply_state)
        return action

    async def _archive_record(
        self, target: Target, document: ArchiveDocument, record: Record
    ) -> RecordResult:
        """Insert one backfilled record, remembering it for retry on failure."""
        try:
            action = await self._insert(document, record)
        except Exception as exc:
            logger.error(
                "Failed to archive message %s in %s during backfill: %s",
                record.id,
                target.id,
                exc,
            )
            self._remember_failure(target.id, record)
            return RecordResult(
                record_id=record.id,
                action=ArchiveAction.INSERT,
                success=False,
                error=str(exc),
            )
        self._failed_records.get(target.id, {}).pop(record.id, None)
        return RecordResult(record_id=record.id, action=action, success=True)

    def _remember_failure(self, target_id: str, record: Record) -> None:
        failed = self._failed_records.setdefault(target_id, {})
        _, attempts = failed.get(record.id, (record, 0))
        attempts += 1
        if attempts >= MAX_RECORD_ATTEMPTS:
            failed.pop(record.id, None)
            logger.error(
                "Giving up on message %s in %s after %d failed attempts",
                record.id,
                target_id,
                attempts,
            )
        else:
            failed[record.id] = (record, attempts)

    async def _retry_failed(
        self, target: Target, document: ArchiveDocument, skip: set[str]
    ) -> list[RecordResult]:
        """Retry records of *target* that failed on an earlier backfill.

        Records in *skip* are left alone; they are on the current page and
        get processed with it.
        """
        failed = self._failed_records.get(target.id)
        if not failed:
            return []
        results = []
        for record_id in sorted(failed, key=id_sort_key):
            if record_id in skip:
                continue
            record, attempts = failed[record_id]
            logger.info(
                "Retrying message %s in %s (attempt %d)",
                record_id,
                target.id,
                attempts + 1,
            )
            results.append(await self._archive_record(target, document, record))
        return results

    async def _resolve_reply_state(self, record: Record) -> ReplyState:
        """Check whether the record *record* replies to still exists.

        Any failure, including a timeout, counts as deleted.
        """
        if record.reply_to_id is None:
            return ReplyState.none()

        try:
            await asyncio.wait_for(
                self.source.fetch_record(
                    record.reply_target, record.reply_to_id
                ),
                timeout=self.reply_timeout,
            )
        except RecordNotFound:
            logger.debug(
                "Message %s replies to deleted message %s",
                record.id,
                record.reply_to_id,
            )
            return ReplyState.deleted(record.reply_to_id)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out checking message %s (replied to by %s in %s), "
                "treating it as deleted",
                record.reply_to_id,
                record.id,
                record.target_id,
            )
            return ReplyState.deleted(record.reply_to_id)
        except Exception as exc:
            logger.warning(
                "Could not check message %s (replied to by %s in %s), "
                "treating it as deleted: %s",
                record.reply_to_id,
                record.id,
                record.target_id,
                exc,
            )
            return ReplyState.deleted(record.reply_to_id)

        return ReplyState.linked(record.reply_to_id)

    async def _after_reply_resolution(
        self, document: ArchiveDocument, reply_state: ReplyState
    ) -> None:
        """Propagate a reply target found missing to older blocks."""
        if reply_state.kind == ReplyKind.DELETED and reply_state.record_id:
            await run_sync(
                document.repair_references_to, reply_state.record_id
            )

    async def _advance(self, target_id: str, candidate: str) -> None:
        """Advance a checkpoint, parking it for retry if the write fails."""
        candidate = max_id(
            candidate, self._pending_checkpoints.pop(target_id, None)
        ) or candidate
        try:
            await run_sync(self.checkpoints.advance, target_id, candidate)
        except OSError as exc:
            logger.error(
                "Failed to save checkpoint %s for %s, will retry: %s",
                candidate,
                target_id,
                exc,
            )
            self._pending_checkpoints[target_id] = candidate

    async def _retry_pending(self, target_id: str) -> None:
        pending = self._pending_checkpoints.get(target_id)
        if pending is not None:
            await self._advance(target_id, pending)

    async def _resolve_target(
        self, target_id: str, hint: Target | None
    ) -> Target | None:
        if hint is not None:
            self._register(hint)
            return hint
        if target_id in self._targets:
            return self._targets[target_id]
        try:
            target = await self.source.fetch_target(target_id)
        except Exception as exc:
            logger.warning(
                "Could not resolve channel %s, ignoring event: %s",
                target_id,
                exc,
            )
            return None
        self._register(target)
        return target

    def _register(self, target: Target) -> None:
        self._targets[target.id] = target
        self.target_states.setdefault(target.id, TargetState.UNSEEN)

    def _lock_for(self, target_id: str) -> asyncio.Lock:
        return self._target_locks.setdefault(target_id, asyncio.Lock())

    def _document_for(self, target: Target) -> ArchiveDocument:
        document = self._documents.get(target.id)
        if document is None:
            kind = "Thread" if target.parent_id else "Channel"
            document = ArchiveDocument(
                archive_path(self.output_root, target.id),
                self.formatter,
                title=target.display_name or f"{kind} {target.id}",
                permalink=target.permalink,
                clock=self._clock,
            )
            self._documents[target.id] = document
        return document

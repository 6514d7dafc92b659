"""Discord adapter: the production ``EventSource`` and gateway client.

Converts discord.py channels and messages into ``Target`` and ``Record``
models, implements the fetch operations the sync engine needs, and forwards
gateway events (new, edited and deleted messages, thread tag changes) to the
engine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import discord

from discord_archiver.sync.engine import SyncEngine
from discord_archiver.sync.models import Attachment, Author, Record, Target
from discord_archiver.sync.source import RecordNotFound, SubTargetListing

if TYPE_CHECKING:
    from discord_archiver.config import Config
    from discord_archiver.config_schema import FormatterConfig

logger = logging.getLogger(__name__)

ARCHIVABLE_CHANNEL_TYPES = (discord.ChannelType.text, discord.ChannelType.forum)


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def resolve_tag_names(thread: Any) -> tuple[str, ...]:
    """Return the names of the forum tags applied to *thread*.

    discord.py resolves applied tag ids against the parent forum's available
    tags; ids the parent no longer knows are dropped.
    """
    tags = getattr(thread, "applied_tags", None) or []
    return tuple(tag.name for tag in tags if getattr(tag, "name", None))


def to_target(channel: Any) -> Target:
    """Convert a text channel, forum channel or thread into a ``Target``."""
    parent_id = getattr(channel, "parent_id", None)
    name = getattr(channel, "name", None)
    kind = "Thread" if parent_id else "Channel"
    return Target(
        id=str(channel.id),
        display_name=name or f"{kind} {channel.id}",
        parent_id=str(parent_id) if parent_id else None,
        labels=resolve_tag_names(channel) if parent_id else (),
        permalink=getattr(channel, "jump_url", None),
        is_container=getattr(channel, "type", None)
        == discord.ChannelType.forum,
    )


def author_handle(user: Any) -> str:
    """Return ``name#discriminator``, or just ``name`` for migrated accounts."""
    discriminator = getattr(user, "discriminator", None)
    if discriminator in (None, "", "0", "0000"):
        return user.name
    return f"{user.name}#{discriminator}"


def to_record(message: Any) -> Record:
    """Convert a discord.py message into a ``Record``."""
    author = message.author
    reference = getattr(message, "reference", None)
    reply_to_id = getattr(reference, "message_id", None)
    reply_channel_id = getattr(reference, "channel_id", None)

    return Record(
        id=str(message.id),
        target_id=str(message.channel.id),
        author=Author(
            display_name=getattr(author, "display_name", None)
            or author.name,
            handle=author_handle(author),
            id=str(author.id),
        ),
        created_at=message.created_at,
        edited_at=message.edited_at,
        body=message.content or "",
        attachments=tuple(
            Attachment(name=a.filename, url=a.url)
            for a in message.attachments
        ),
        reply_to_id=str(reply_to_id) if reply_to_id else None,
        reply_to_target_id=str(reply_channel_id) if reply_channel_id else None,
    )


# ---------------------------------------------------------------------------
# Event source
# ---------------------------------------------------------------------------


class DiscordEventSource:
    """``EventSource`` backed by a connected ``discord.Client``."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def get_channel(self, target_id: str) -> Any:
        """Return a channel from the cache, falling back to the API."""
        channel = self.client.get_channel(int(target_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(target_id))
        return channel

    async def fetch_target(self, target_id: str) -> Target:
        return to_target(await self.get_channel(target_id))

    async def fetch_records(
        self, target: Target, after_id: str | None, limit: int
    ) -> list[Record]:
        channel = await self.get_channel(target.id)
        if after_id is None:
            messages = [m async for m in channel.history(limit=limit)]
        else:
            messages = [
                m
                async for m in channel.history(
                    limit=limit,
                    after=discord.Object(id=int(after_id)),
                    oldest_first=True,
                )
            ]
            messages.reverse()
        return [to_record(m) for m in messages]

    async def fetch_record(self, target_id: str, record_id: str) -> Record:
        try:
            channel = await self.get_channel(target_id)
            message = await channel.fetch_message(int(record_id))
        except discord.NotFound as exc:
            raise RecordNotFound(target_id, record_id) from exc
        return to_record(message)

    async def enumerate_sub_targets(self, parent: Target) -> SubTargetListing:
        channel = await self.get_channel(parent.id)
        active = [
            thread
            for thread in await channel.guild.active_threads()
            if thread.parent_id == channel.id
        ]
        archived = [t async for t in channel.archived_threads(limit=None)]
        return SubTargetListing(
            active=[to_target(t) for t in active],
            archived=[to_target(t) for t in archived],
        )


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


class ArchiverClient(discord.Client):
    """Discord client that runs the startup backfill and live sync.

    Args:
        config: Runtime configuration.
        formatter_config: Optional block templates from the config file.
    """

    def __init__(
        self,
        config: Config,
        formatter_config: FormatterConfig | None = None,
        **options: Any,
    ) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.guild_messages = True
        intents.message_content = True  # privileged, enable in dev portal
        super().__init__(intents=intents, **options)

        self.source = DiscordEventSource(self)
        self.engine = SyncEngine.from_config(
            config, self.source, formatter_config
        )
        self._started = False

    async def on_ready(self) -> None:
        logger.info("Logged in as %s", self.user)
        # on_ready fires again after every reconnect
        if self._started:
            return
        self._started = True

        try:
            channel = await self.source.get_channel(
                self.engine.root_target_id
            )
        except discord.HTTPException as exc:
            logger.error(
                "Target channel %s not found: %s",
                self.engine.root_target_id,
                exc,
            )
            await self.close()
            return

        if getattr(channel, "type", None) not in ARCHIVABLE_CHANNEL_TYPES:
            logger.error(
                "Channel %s is not a text or forum channel",
                self.engine.root_target_id,
            )
            await self.close()
            return

        await self.engine.start()
        logger.info("Listening for new messages")

    async def on_message(self, message: discord.Message) -> None:
        await self.engine.on_create(
            to_record(message), to_target(message.channel)
        )

    async def on_raw_message_edit(
        self, payload: discord.RawMessageUpdateEvent
    ) -> None:
        if not self._tracks_channel(payload.channel_id):
            logger.debug(
                "Ignoring edit of message %s in untracked channel %s",
                payload.message_id,
                payload.channel_id,
            )
            return

        # Raw events cover messages sent before the client's cache existed
        try:
            channel = await self.source.get_channel(str(payload.channel_id))
            message = await channel.fetch_message(payload.message_id)
        except discord.HTTPException as exc:
            logger.error(
                "Failed to fetch edited message %s in %s: %s",
                payload.message_id,
                payload.channel_id,
                exc,
            )
            return

        old = (
            to_record(payload.cached_message)
            if payload.cached_message is not None
            else None
        )
        await self.engine.on_update(
            old, to_record(message), to_target(message.channel)
        )

    def _tracks_channel(self, channel_id: int) -> bool:
        """Cheap scope check: engine registry first, then the local cache."""
        if self.engine.is_tracked(str(channel_id)):
            return True
        # A thread created after startup may not be registered yet
        cached = self.get_channel(channel_id)
        return cached is not None and self.engine.is_archived(
            to_target(cached)
        )

    async def on_raw_message_delete(
        self, payload: discord.RawMessageDeleteEvent
    ) -> None:
        await self.engine.on_delete(
            str(payload.channel_id), str(payload.message_id)
        )

    async def on_thread_update(
        self, before: discord.Thread, after: discord.Thread
    ) -> None:
        await self.engine.on_sub_target_changed(
            to_target(before), to_target(after)
        )

"""Unified configuration schema for discord_archiver.

Defines Pydantic models for the unified config structure with dedicated
sections for the Discord connection, archive behaviour, block formatting,
and logging.

Usage:
    from discord_archiver.config_schema import build_config, to_fallbacks

    raw = load_config_file()
    unified = build_config(raw)
    fallbacks = to_fallbacks(unified)
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class DiscordConfig(BaseModel):
    """Discord connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    token: str | None = Field(default=None, description="Bot token")
    channel_id: str | None = Field(
        default=None, description="Text or forum channel to archive"
    )

    model_config = {"frozen": True}

    @field_validator("channel_id", mode="before")
    @classmethod
    def _coerce_channel_id(cls, value: Any) -> Any:
        # YAML reads unquoted snowflakes as int
        if isinstance(value, int):
            return str(value)
        return value


class ArchiveConfig(BaseModel):
    """Archive location and sync behaviour."""

    output_root: str | None = Field(
        default=None, description="Directory receiving the Markdown files"
    )
    checkpoint_path: str | None = Field(
        default=None, description="Checkpoint JSON file"
    )
    max_fetch_size: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Messages fetched per backfill page (1-100)",
    )
    filter_tags: list[str] | None = Field(
        default=None,
        description="Forum tag filter; empty archives every thread",
    )
    reply_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait when checking a replied-to message",
    )
    max_parallel_backfills: int | None = Field(
        default=None,
        ge=1,
        le=32,
        description="Threads backfilled concurrently at startup (1-32)",
    )

    model_config = {"frozen": True}


class FormatterConfig(BaseModel):
    """Templates and fence policy used to render archive blocks.

    Templates taking a record id must contain ``{id}``.  The marker line
    identifies a block in the archive, so changing ``marker_template`` on an
    existing archive makes its old blocks invisible to updates and deletes.
    """

    header_template: str = "# {title}"
    permalink_template: str = "<{url}>"
    marker_template: str = "### Message {id}"
    author_template: str = "by {display_name} ({handle}, {id})"
    timestamp_template: str = "at *{timestamp}*"
    edited_template: str = "**MODIFIED** last time at *{timestamp}*"
    reply_link_template: str = "in reply to [{id}](#{id})"
    reply_deleted_template: str = "in reply to **DELETED MESSAGE** ({id})"
    fence_char: str = Field(default="`", min_length=1, max_length=1)
    min_fence_length: int = Field(default=3, ge=3)
    attachments_heading: str = "**Attachments:**"
    attachment_template: str = "- [{name}]({url})"
    separator: str = "---"

    model_config = {"frozen": True}

    @field_validator(
        "marker_template",
        "reply_link_template",
        "reply_deleted_template",
    )
    @classmethod
    def _require_id_placeholder(cls, value: str) -> str:
        if "{id}" not in value:
            raise ValueError("template must contain '{id}'")
        return value

    @field_validator("fence_char")
    @classmethod
    def _fence_char_not_space(cls, value: str) -> str:
        if value.isspace():
            raise ValueError("fence_char cannot be whitespace")
        return value

    @model_validator(mode="after")
    def _marker_is_distinct(self) -> FormatterConfig:
        if self.marker_template.strip() == "":
            raise ValueError("marker_template cannot be blank")
        if self.marker_template.startswith(self.fence_char):
            raise ValueError(
                "marker_template cannot start with the fence character"
            )
        if set(self.separator.strip()) == {self.fence_char}:
            raise ValueError(
                "separator cannot consist of the fence character"
            )
        return self


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", pattern="^(text|json)$")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    format: FormatterConfig = Field(default_factory=FormatterConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_config_file()``.

    Handles missing sections gracefully -- anything absent gets defaults.

    Args:
        raw_data: Configuration dictionary read from the YAML file.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> load_config() fallbacks
# ---------------------------------------------------------------------------


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the ``discord`` and ``archive`` sections into the fallback
    dict accepted by ``load_config(yaml_fallbacks=...)``.

    Unset (``None``) values are dropped so they never shadow defaults.
    """
    fallbacks: dict[str, Any] = {}
    if unified.discord.token is not None:
        fallbacks["api_token"] = unified.discord.token
    if unified.discord.channel_id is not None:
        fallbacks["channel_id"] = unified.discord.channel_id
    fallbacks.update(
        {
            k: v
            for k, v in unified.archive.model_dump().items()
            if v is not None
        }
    )
    return fallbacks

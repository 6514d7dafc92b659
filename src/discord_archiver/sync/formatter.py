"""Render records into Markdown archive blocks.

A block looks like this with the default ``FormatterConfig``::

    ### Message 1187
    by Ada (ada, 4242)
    at *2024-05-01 09:30:00.125 UTC*
    **MODIFIED** last time at *2024-05-01 09:31:02.000 UTC*
    in reply to [1180](#1180)

    ```
    message body
    ```

    **Attachments:**
    - [log.txt](https://cdn.example/log.txt)
    ---

The first line is the block's start marker.  The body is always fenced with
a run of fence characters longer than any run inside the body, so nothing a
user types can close the fence early or pass for a start marker.

``RecordFormatter`` is stateless: ``render()`` is a pure function of its
arguments, which lets ``ArchiveDocument.update()`` detect no-op edits by
comparing text.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from discord_archiver.config_schema import FormatterConfig

from .models import Record, ReplyKind, ReplyState

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def _fill(template: str, **values: str) -> str:
    """Substitute ``{name}`` placeholders in one pass.

    Unlike ``str.format`` this leaves unknown placeholders and stray braces
    alone and never re-expands text coming from a substituted value.
    """

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in values:
            return values[key]
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


def _line_pattern(template: str) -> re.Pattern:
    """Compile a full-line pattern matching *template* for any id.

    Every literal part of the template is escaped; repeated ``{id}``
    placeholders must all carry the same id.
    """
    parts = template.split("{id}")
    pieces = [re.escape(parts[0]), r"(?P<id>\S+?)"]
    for part in parts[1:-1]:
        pieces.append(re.escape(part))
        pieces.append("(?P=id)")
    pieces.append(re.escape(parts[-1]))
    return re.compile("^" + "".join(pieces) + "$")


def _inline(text: str) -> str:
    """Collapse all whitespace so a value stays on one line."""
    return " ".join(str(text).split())


def format_timestamp(value: datetime) -> str:
    """Format *value* as ``YYYY-MM-DD HH:MM:SS.mmm UTC``.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return (
        f"{value:%Y-%m-%d %H:%M:%S}.{value.microsecond // 1000:03d} UTC"
    )


def longest_run(text: str, char: str) -> int:
    """Return the length of the longest run of *char* in *text*."""
    longest = current = 0
    for c in text:
        if c == char:
            current += 1
            if current > longest:
                longest = current
        else:
            current = 0
    return longest


class RecordFormatter:
    """Render records and recognise the markers inside rendered blocks.

    Args:
        config: Templates and fence policy.  Defaults to ``FormatterConfig()``.
    """

    def __init__(self, config: FormatterConfig | None = None) -> None:
        self.config = config or FormatterConfig()
        self._marker_re = _line_pattern(self.config.marker_template)
        self._link_re = _line_pattern(self.config.reply_link_template)
        self._placeholder_re = _line_pattern(
            self.config.reply_deleted_template
        )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, record: Record, reply_state: ReplyState) -> str:
        """Render *record* as one archive block, ending in a blank line."""
        cfg = self.config
        author = record.author
        lines = [
            self.marker_for(record.id),
            _fill(
                cfg.author_template,
                display_name=_inline(author.display_name),
                handle=_inline(author.handle),
                id=_inline(author.id),
            ),
            _fill(
                cfg.timestamp_template,
                timestamp=format_timestamp(record.created_at),
            ),
        ]

        if record.edited_at is not None:
            lines.append(
                _fill(
                    cfg.edited_template,
                    timestamp=format_timestamp(record.edited_at),
                )
            )

        if reply_state.kind == ReplyKind.LINKED:
            lines.append(self.reply_link(reply_state.record_id or ""))
        elif reply_state.kind == ReplyKind.DELETED:
            lines.append(self.reply_placeholder(reply_state.record_id or ""))

        body = record.body.replace("\r\n", "\n").replace("\r", "\n")
        fence = self.fence_for(body)
        lines.append("")
        lines.append(fence)
        if body:
            lines.append(body)
        lines.append(fence)

        if record.attachments:
            lines.append("")
            lines.append(cfg.attachments_heading)
            for attachment in record.attachments:
                lines.append(
                    _fill(
                        cfg.attachment_template,
                        name=_inline(attachment.name),
                        url=_inline(attachment.url),
                    )
                )

        lines.append(cfg.separator)
        return "\n".join(lines) + "\n\n"

    def render_header(self, title: str, permalink: str | None = None) -> str:
        """Render the archive file header, ending in a blank line."""
        lines = [_fill(self.config.header_template, title=_inline(title))]
        if permalink:
            lines.append(
                _fill(self.config.permalink_template, url=_inline(permalink))
            )
        return "\n".join(lines) + "\n\n"

    def fence_for(self, body: str) -> str:
        """Return a fence longer than any fence-character run in *body*."""
        length = max(
            self.config.min_fence_length,
            longest_run(body, self.config.fence_char) + 1,
        )
        return self.config.fence_char * length

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    def marker_for(self, record_id: str) -> str:
        return _fill(self.config.marker_template, id=record_id)

    def parse_marker(self, line: str) -> str | None:
        """Return the record id if *line* is a block start marker."""
        match = self._marker_re.match(line.rstrip("\r\n"))
        return match.group("id") if match else None

    def fence_length(self, line: str) -> int:
        """Return the fence length if *line* is a bare fence, else 0."""
        stripped = line.strip()
        if len(stripped) < 3:
            return 0
        if stripped != self.config.fence_char * len(stripped):
            return 0
        return len(stripped)

    # ------------------------------------------------------------------
    # Reply references
    # ------------------------------------------------------------------

    def reply_link(self, record_id: str) -> str:
        return _fill(self.config.reply_link_template, id=record_id)

    def reply_placeholder(self, record_id: str) -> str:
        return _fill(self.config.reply_deleted_template, id=record_id)

    def parse_reply_link(self, text: str) -> str | None:
        """Return the referenced id if *text* holds a link-form reply line."""
        for line in text.splitlines():
            match = self._link_re.match(line.strip())
            if match:
                return match.group("id")
        return None

    def parse_reply_target_placeholder(self, text: str) -> str | None:
        """Return the referenced id if *text* holds a deleted-reply line."""
        for line in text.splitlines():
            match = self._placeholder_re.match(line.strip())
            if match:
                return match.group("id")
        return None

    def mark_reply_deleted(self, block: str, record_id: str) -> str:
        """Rewrite a link-form reply to *record_id* into the placeholder.

        Only the block's heading lines (before the body fence) are
        considered, so message text quoting a reply line is left alone.
        Returns *block* unchanged when it has no such reply line.
        """
        link = self.reply_link(record_id)
        lines = block.split("\n")
        for index, line in enumerate(lines):
            if self.fence_length(line):
                break
            if line.strip() == link:
                lines[index] = self.reply_placeholder(record_id)
                return "\n".join(lines)
        return block

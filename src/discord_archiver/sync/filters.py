"""Tag-based scope filter for threads under the archived channel.

A thread is in scope when any of its tag names and any filter token contain
one another, ignoring case.  Matching both ways lets a short token such as
``bug`` select a ``bug-report`` tag and a short tag such as ``ui`` be
selected by a longer token such as ``ui polish``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .models import Target

if TYPE_CHECKING:
    from .source import EventSource

logger = logging.getLogger(__name__)


def normalize_labels(labels: Iterable[str]) -> list[str]:
    """Lower-case and strip *labels*, dropping blank entries."""
    normalized = []
    for label in labels:
        value = str(label).strip().lower()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


def is_in_scope(sub_target: Target, filter_labels: Iterable[str]) -> bool:
    """Return ``True`` if *sub_target* passes the label filter.

    An empty filter admits everything.  Otherwise at least one of the
    target's labels must contain, or be contained in, at least one token.
    """
    tokens = normalize_labels(filter_labels)
    if not tokens:
        return True

    for label in normalize_labels(sub_target.labels):
        for token in tokens:
            if token in label or label in token:
                return True
    return False


class TargetFilter:
    """Decide which threads of a channel get archived.

    Args:
        labels: Filter tokens.  Empty archives every thread.
    """

    def __init__(self, labels: Iterable[str] = ()) -> None:
        self.labels = normalize_labels(labels)

    def is_in_scope(self, sub_target: Target) -> bool:
        return is_in_scope(sub_target, self.labels)

    async def enumerate_in_scope(
        self, source: EventSource, parent: Target
    ) -> list[Target]:
        """List active and archived threads of *parent* that are in scope."""
        listing = await source.enumerate_sub_targets(parent)

        seen: set[str] = set()
        threads: list[Target] = []
        for thread in [*listing.active, *listing.archived]:
            if thread.id not in seen:
                seen.add(thread.id)
                threads.append(thread)

        selected = [t for t in threads if self.is_in_scope(t)]
        logger.info(
            "Found %d threads in channel %s", len(threads), parent.id
        )
        if self.labels:
            logger.info(
                "Filtering by tags %s: %d/%d threads match",
                ", ".join(self.labels),
                len(selected),
                len(threads),
            )
        return selected

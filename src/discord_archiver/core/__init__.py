"""Async helpers shared by the sync engine and the Discord gateway."""

from .async_utils import gather_limited, run_sync

__all__ = ["gather_limited", "run_sync"]

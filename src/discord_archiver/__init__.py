"""Incremental Markdown archiver for Discord channels and forum threads."""

__version__ = "0.3.0"

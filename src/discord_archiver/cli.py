"""Command-line entry point for the Discord archiver.

Loads configuration (CLI > env / .env > YAML config > defaults), fails fast
on missing credentials or channel id, configures logging, then connects to
Discord and keeps the archive in sync until interrupted.
"""

import argparse
import logging
import sys
from typing import Any

import yaml
from dotenv import load_dotenv

from . import __version__
from .config import Config, load_config
from .config_loader import ensure_config, load_config_file
from .config_schema import UnifiedConfig, build_config, to_fallbacks
from .logger import setup_logging

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback."""
    print(msg, file=sys.stderr, flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="discord-archiver",
        description="Mirror a Discord text or forum channel into Markdown files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with settings from .env or .discord_archiver/config.yml
  discord-archiver

  # Archive a specific channel
  discord-archiver 123456789012345678

  # Only archive forum threads tagged like "bug" or "feature"
  discord-archiver 123456789012345678 --filter-tags bug,feature

  # Write a starter config file and exit
  discord-archiver --init-config

Note: API_TOKEN should come from the environment or a .env file; passing
--token exposes it in the process list.
        """,
    )
    parser.add_argument(
        "channel_id",
        nargs="?",
        help="Channel to archive (overrides CHANNEL_ID env var and config files)",
    )
    parser.add_argument(
        "--token",
        help="Discord bot token (prefer the API_TOKEN env var)",
    )
    parser.add_argument(
        "--output-root",
        help="Directory for Markdown files (default: ./archive)",
    )
    parser.add_argument(
        "--checkpoint-path",
        help="Checkpoint file (default: ./archive/checkpoints.json)",
    )
    parser.add_argument(
        "--max-fetch-size",
        type=int,
        help="Messages fetched per backfill page, 1-100 (default: 100)",
    )
    parser.add_argument(
        "--filter-tags",
        help="Comma-separated forum tags; threads matching none are skipped",
    )
    parser.add_argument(
        "--log-file",
        help="Also append log lines to this file",
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        help="Log line format (default: text)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Create .discord_archiver/config.yml if no config file exists, then exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"discord-archiver version {__version__}",
    )
    return parser


def resolve_settings(
    args: argparse.Namespace,
) -> tuple[Config, UnifiedConfig]:
    """Merge CLI args, environment and the config file into a ``Config``.

    Raises:
        ValueError: If required settings are missing or invalid.
    """
    unified = build_config(load_config_file())

    config = load_config(
        api_token=args.token,
        channel_id=args.channel_id,
        output_root=args.output_root,
        checkpoint_path=args.checkpoint_path,
        max_fetch_size=args.max_fetch_size,
        filter_tags=args.filter_tags,
        debug=args.debug,
        yaml_fallbacks=to_fallbacks(unified),
    )
    return config, unified


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args(argv)

    if args.init_config:
        path = ensure_config()
        _stderr_print(f"Config file: {path}")
        return

    # .env first so ${VAR} interpolation in YAML can use its values
    load_dotenv()

    try:
        config, unified = resolve_settings(args)
    except (ValueError, OSError, yaml.YAMLError) as e:
        _stderr_print(f"ERROR: Configuration error: {e}")
        sys.exit(1)

    setup_logging(
        debug=config.debug,
        log_file=args.log_file or unified.logging.file,
        log_format=args.log_format or unified.logging.format,
        level=unified.logging.level,
    )
    logger.info(
        "Archiving channel %s into %s (checkpoints: %s)",
        config.channel_id,
        config.output_root,
        config.checkpoint_path,
    )
    if config.filter_tags:
        logger.info("Filtering threads by tags: %s", ", ".join(config.filter_tags))

    start_client(config, unified)


def start_client(config: Config, unified: UnifiedConfig, **options: Any) -> None:
    """Connect to Discord and block until the client stops."""
    import discord

    from .gateway import ArchiverClient

    client = ArchiverClient(config, unified.format, **options)
    try:
        # Logging is already configured; keep discord.py from adding handlers
        client.run(config.api_token, log_handler=None)
    except discord.LoginFailure as e:
        logger.error("Failed to login: %s", e)
        _stderr_print(f"ERROR: Failed to login: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Archiver stopped")


if __name__ == "__main__":
    run()

"""Runtime configuration for the archiver.

Reads settings from CLI args, environment variables, .env files, and YAML
config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    API_TOKEN: Discord bot token (required)
    CHANNEL_ID: Text or forum channel to archive (required, or CLI argument)
    MAX_FETCH_SIZE: Messages per backfill page (optional, 1-100, default: 100)
    OUTPUT_ROOT: Directory for Markdown files (optional, default: ./archive)
    CHECKPOINT_PATH: Checkpoint file (optional, default: ./archive/checkpoints.json)
    FILTER_TAGS: Comma-separated forum tag filter (optional)
    REPLY_TIMEOUT: Seconds to wait when checking replied-to messages (optional, default: 5)
    MAX_PARALLEL_BACKFILLS: Threads backfilled at once on startup (optional, 1-32, default: 1)
    ARCHIVER_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_ROOT = "./archive"
DEFAULT_CHECKPOINT_PATH = "./archive/checkpoints.json"


@dataclass
class Config:
    api_token: str
    channel_id: str
    max_fetch_size: int = 100
    output_root: str = DEFAULT_OUTPUT_ROOT
    checkpoint_path: str = DEFAULT_CHECKPOINT_PATH
    filter_tags: list[str] = field(default_factory=list)
    reply_timeout: float = 5.0
    max_parallel_backfills: int = 1
    debug: bool = False


def parse_filter_tags(value: str | list[str] | None) -> list[str]:
    """Split a comma-separated tag list (or clean a list) into lower-case tokens."""
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else value
    return [str(tag).strip().lower() for tag in items if str(tag).strip()]


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the token or channel id is empty, or a numeric
            setting is out of range.
    """
    config.api_token = config.api_token.strip()
    config.channel_id = config.channel_id.strip()

    if not config.api_token:
        raise ValueError(
            "Discord token cannot be empty. Set API_TOKEN environment variable."
        )

    if not config.channel_id:
        raise ValueError(
            "Channel id cannot be empty. Set CHANNEL_ID environment variable "
            "or pass it as a command line argument."
        )

    if not config.channel_id.isdigit():
        raise ValueError(
            f"Invalid channel id '{config.channel_id}': must be numeric"
        )

    if not (1 <= config.max_fetch_size <= 100):
        raise ValueError(
            f"Invalid max fetch size {config.max_fetch_size}: must be between 1 and 100"
        )

    if config.reply_timeout <= 0:
        raise ValueError(
            f"Invalid reply timeout {config.reply_timeout}: must be positive"
        )

    if not (1 <= config.max_parallel_backfills <= 32):
        raise ValueError(
            f"Invalid max parallel backfills {config.max_parallel_backfills}: "
            "must be between 1 and 32"
        )


def _env_number(key: str, kind: type, fallback):
    """Return env var *key* converted with *kind*, or *fallback* if unset."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return fallback
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number"
        ) from None


def load_config(
    api_token: str | None = None,
    channel_id: str | None = None,
    output_root: str | None = None,
    checkpoint_path: str | None = None,
    max_fetch_size: int | None = None,
    filter_tags: str | list[str] | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        api_token: Override bot token.
        channel_id: Override channel id.
        output_root: Override archive directory.
        checkpoint_path: Override checkpoint file.
        max_fetch_size: Override backfill page size.
        filter_tags: Override tag filter (comma-separated or list).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flattened values from the YAML config file, as
            produced by ``config_schema.to_fallbacks()``.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the token or channel id is missing after checking
            all sources, or any value is invalid.
    """
    fb = yaml_fallbacks or {}

    # --- Required strings: CLI > env > YAML > error ---

    final_token = api_token or os.getenv("API_TOKEN") or fb.get("api_token")
    if not final_token:
        raise ValueError(
            "Discord token not found. Set API_TOKEN environment variable, "
            "pass --token CLI argument, or add 'token' to config.yml."
        )

    final_channel = (
        channel_id or os.getenv("CHANNEL_ID") or fb.get("channel_id")
    )
    if not final_channel:
        raise ValueError(
            "Channel id not found. Set CHANNEL_ID environment variable, "
            "pass it as a CLI argument, or add 'channel_id' to config.yml."
        )

    # --- Optional strings: CLI > env > YAML > default ---

    final_output_root = (
        output_root
        or os.getenv("OUTPUT_ROOT")
        or fb.get("output_root")
        or DEFAULT_OUTPUT_ROOT
    )
    final_checkpoint_path = (
        checkpoint_path
        or os.getenv("CHECKPOINT_PATH")
        or fb.get("checkpoint_path")
        or DEFAULT_CHECKPOINT_PATH
    )

    if filter_tags is not None:
        final_tags = parse_filter_tags(filter_tags)
    elif os.getenv("FILTER_TAGS") is not None:
        final_tags = parse_filter_tags(os.getenv("FILTER_TAGS"))
    else:
        final_tags = parse_filter_tags(fb.get("filter_tags"))

    # --- Numeric fields: CLI > env > YAML > default ---

    if max_fetch_size is not None:
        final_fetch = max_fetch_size
    else:
        final_fetch = _env_number(
            "MAX_FETCH_SIZE", int, fb.get("max_fetch_size", 100)
        )

    final_timeout = _env_number(
        "REPLY_TIMEOUT", float, fb.get("reply_timeout", 5.0)
    )
    final_parallel = _env_number(
        "MAX_PARALLEL_BACKFILLS", int, fb.get("max_parallel_backfills", 1)
    )

    # --- Boolean fields: CLI > env > default ---

    if debug:
        final_debug = True
    else:
        env_debug = os.getenv("ARCHIVER_DEBUG")
        final_debug = env_debug is not None and env_debug.lower() in (
            "true",
            "1",
            "yes",
            "on",
        )

    config = Config(
        api_token=str(final_token),
        channel_id=str(final_channel),
        max_fetch_size=int(final_fetch),
        output_root=str(final_output_root),
        checkpoint_path=str(final_checkpoint_path),
        filter_tags=final_tags,
        reply_timeout=float(final_timeout),
        max_parallel_backfills=int(final_parallel),
        debug=final_debug,
    )

    validate_config(config)

    return config

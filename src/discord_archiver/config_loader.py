"""Find and read the archiver's YAML config file.

One file is used: the first that exists of

1. the path in ``$DISCORD_ARCHIVER_CONFIG``
2. ``./.discord_archiver/config.yml`` (or ``config.yaml``)
3. ``~/.config/discord_archiver/config.yml``

String values may reference environment variables as ``${NAME}`` or
``${NAME:-fallback}``, so the token can stay out of the file.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DISCORD_ARCHIVER_CONFIG"
PROJECT_DIR_NAME = ".discord_archiver"

_VAR_REF = re.compile(
    r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}"
)


def expand_env(text: str) -> str:
    """Expand ``${NAME}`` and ``${NAME:-fallback}`` in *text*.

    An unset or empty variable yields its fallback, or ``""`` without one.
    Anything that is not a complete reference is left as written.
    """
    return _VAR_REF.sub(
        lambda m: os.environ.get(m["name"]) or (m["fallback"] or ""), text
    )


def _expand_tree(node: Any) -> Any:
    if isinstance(node, str):
        return expand_env(node)
    if isinstance(node, list):
        return [_expand_tree(item) for item in node]
    if isinstance(node, dict):
        return {key: _expand_tree(value) for key, value in node.items()}
    return node


def config_candidates() -> list[Path]:
    """Return the config lookup paths, most specific first."""
    paths = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        paths.append(Path(explicit).expanduser())
    project = Path.cwd() / PROJECT_DIR_NAME
    paths += [project / "config.yml", project / "config.yaml"]
    paths.append(Path.home() / ".config" / "discord_archiver" / "config.yml")
    return paths


def find_config_file() -> Path | None:
    """Return the first existing config file, or ``None``."""
    return next((p for p in config_candidates() if p.is_file()), None)


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Read *path* (default: the discovered file) into a plain dict.

    Returns an empty dict when there is no config file or it is empty.

    Raises:
        yaml.YAMLError: The file is not valid YAML.
        ValueError: The top level of the file is not a mapping.
    """
    path = path or find_config_file()
    if path is None:
        logger.debug("No config file found, using defaults")
        return {}

    logger.debug("Reading config from %s", path)
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"{path}: expected a mapping at the top level, "
            f"got {type(data).__name__}"
        )
    return _expand_tree(data)


_STARTER_CONFIG = """\
# discord-archiver configuration
#
# Every setting can also come from the environment (or a .env file):
# API_TOKEN, CHANNEL_ID, OUTPUT_ROOT, CHECKPOINT_PATH, MAX_FETCH_SIZE,
# FILTER_TAGS, REPLY_TIMEOUT, MAX_PARALLEL_BACKFILLS
#
# discord:
#   token: ${API_TOKEN}
#   channel_id: "123456789012345678"
#
# archive:
#   output_root: ./archive
#   checkpoint_path: ./archive/checkpoints.json
#   max_fetch_size: 100
#   filter_tags: [bug, feature]
#   reply_timeout: 5
#   max_parallel_backfills: 1
#
# format:
#   marker_template: "### Message {id}"
#   reply_link_template: "in reply to [{id}](#{id})"
#   reply_deleted_template: "in reply to **DELETED MESSAGE** ({id})"
#
# logging:
#   level: INFO
#   file: null
#   format: text
"""


def ensure_config(target: Path | None = None) -> Path:
    """Write a commented starter file unless a config file already exists.

    Returns the path of the existing or newly written file.
    """
    existing = find_config_file()
    if existing is not None:
        logger.debug("Config file already exists: %s", existing)
        return existing

    path = target or Path.cwd() / PROJECT_DIR_NAME / "config.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path

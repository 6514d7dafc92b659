"""File handler module: safe archive paths, encoding-aware read, atomic write.

Provides the file I/O infrastructure used by the archive documents.
All functions are synchronous; callers in async code offload them via
``run_sync()``.
"""

import os
import re
import tempfile
from pathlib import Path

from charset_normalizer import from_bytes

# =============================================================================
# Path Handling
# =============================================================================

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def safe_file_stem(target_id: str) -> str:
    """Reduce a target id to characters that are safe in a file name.

    Only ``[A-Za-z0-9_-]`` survive, which rules out path separators and
    ``..`` traversal.

    Raises:
        ValueError: If nothing is left after sanitizing.
    """
    stem = _UNSAFE_CHARS.sub("", str(target_id))
    if not stem:
        raise ValueError(
            f"Target id {target_id!r} has no file-name-safe characters"
        )
    return stem


def archive_path(output_root: Path, target_id: str) -> Path:
    """Return the Markdown archive path for *target_id* under *output_root*."""
    return Path(output_root) / f"{safe_file_stem(target_id)}.md"


# =============================================================================
# File Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file, detecting its encoding when it is not valid UTF-8.

    Archives are written as UTF-8, but a hand-edited file may have been
    saved in another encoding; charset-normalizer picks that up instead of
    failing the whole sync.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    try:
        return (raw.decode("utf-8"), "utf-8")
    except UnicodeDecodeError:
        pass

    result = from_bytes(raw).best()
    if result is None:
        # Detection failed, fall back to utf-8
        return (raw.decode("utf-8", errors="replace"), "utf-8")
    return (str(result), result.encoding)


def write_file(
    path: Path, content: str, encoding: str = "utf-8"
) -> int:
    """Write content to a file atomically, creating parent directories.

    The content goes to a temp file in the same directory which then
    replaces *path*, so a crash never leaves a half-written archive.

    Args:
        path: Path to the output file.
        content: String content to write.
        encoding: Encoding to use (default: utf-8).

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode(encoding)

    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(encoded)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(encoded)

"""Path utilities for directory and file operations."""

from __future__ import annotations

import re
from pathlib import Path

_INDEX_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def ensure_dir(path: Path) -> Path:
    """Ensure directory exists, creating if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def validate_index_name(name: str) -> str:
    """Reject index names that could escape the index root directory."""
    if not _INDEX_NAME_RE.match(name) or name in {".", ".."}:
        raise ValueError(
            f"Invalid index name {name!r}: use letters, digits, '.', '_' or '-' "
            "and start with a letter or digit."
        )
    return name


def directory_size(root: Path) -> int:
    """Return the total size in bytes of regular files below ``root``."""
    total = 0
    for path in root.rglob("*"):
        if path.is_symlink():
            continue
        if path.is_file():
            total += path.stat().st_size
    return total
